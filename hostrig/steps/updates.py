import shlex

from hostrig.steps import Step, StepContext, provides_step
from hostrig.utils import ShellScript

HOSTS_FILE = '/etc/hosts'


def redirect_to_loopback(name: str) -> ShellScript:
    """ Point the name at ``127.0.0.1``, unless the hosts file knows it already """

    line = shlex.quote(f'127.0.0.1\t{name}')
    pattern = shlex.quote(f'[[:space:]]{name}$')

    return ShellScript(f'grep -q {pattern} {HOSTS_FILE}') \
        | ShellScript(f'echo {line} >> {HOSTS_FILE}')


@provides_step('disable_updates', order=60)
class DisableUpdates(Step):
    """
    Keep the host away from update servers.

    Every name listed in ``update-hosts`` is mapped to the loopback in
    ``/etc/hosts``. Running the step again changes nothing.
    """

    FLAG = 'disable_updates'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        update_hosts = list(context.options['update_hosts'] or [])

        if not update_hosts:
            context.logger.verbose('disable_updates', 'no update hosts to redirect')

            return True

        context.execute(
            ShellScript(' && '.join(f'({redirect_to_loopback(name)})' for name in update_hosts)),
            friendly_command=f"redirect {', '.join(update_hosts)} to 127.0.0.1")

        return True
