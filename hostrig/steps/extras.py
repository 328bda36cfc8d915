import shlex

from hostrig.steps import Step, StepContext, provides_step
from hostrig.utils import ShellScript


@provides_step('add_el_extras', order=40)
class AddElExtras(Step):
    """
    Install the EPEL repository on Enterprise Linux hosts.

    The release package matching the major version of the platform is
    installed from ``epel-url``. There is nothing to do on other
    platforms.
    """

    FLAG = 'add_el_extras'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        version = context.host.el_version

        if version is None:
            context.logger.verbose(
                'add_el_extras', f"nothing to do on '{context.host.platform}'")

            return True

        url = context.options['epel_url'].format(version=version)

        context.logger.verbose('epel', url, color='green')

        context.execute(
            ShellScript('rpm -q epel-release')
            | ShellScript(f'rpm -i {shlex.quote(url)}'))

        return True
