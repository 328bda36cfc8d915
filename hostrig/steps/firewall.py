from hostrig.steps import Step, StepContext, provides_step
from hostrig.utils import ShellScript

#: Platform families managing their firewall by ``firewalld`` or the
#: ``iptables`` service.
FIREWALL_SERVICE_FAMILIES = (
    'el', 'centos', 'redhat', 'rhel', 'fedora', 'oracle', 'scientific', 'rocky', 'alma')

STOP_FIREWALL_SERVICE = ShellScript(
    'if systemctl is-active --quiet firewalld 2>/dev/null; then'
    ' systemctl stop firewalld && systemctl disable firewalld;'
    ' else service iptables stop; fi')

FLUSH_IPTABLES = ShellScript('iptables -F')

DISABLE_WINDOWS_FIREWALL = ShellScript('netsh advfirewall set allprofiles state off')


@provides_step('disable_iptables', order=50)
class DisableIptables(Step):
    """ Turn off the firewall of the host """

    FLAG = 'disable_iptables'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        if context.host.is_windows:
            context.execute(DISABLE_WINDOWS_FIREWALL)

        elif context.host.family in FIREWALL_SERVICE_FAMILIES:
            context.execute(STOP_FIREWALL_SERVICE)

        else:
            context.execute(FLUSH_IPTABLES)

        return True
