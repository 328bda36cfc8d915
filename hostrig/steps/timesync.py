import shlex

from hostrig.steps import Step, StepContext, provides_step
from hostrig.utils import ShellScript

#: ``ntpdate`` gives up after this many seconds.
NTPDATE_TIMEOUT = 20


@provides_step('timesync', order=20)
class Timesync(Step):
    """
    Synchronize the clock of the host with ``ntp-server``.

    ``ntpdate`` is tried first, hosts running ``chronyd`` are stepped with
    ``chronyc``. Windows hosts resync with their configured time source.
    """

    FLAG = 'timesync'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        if context.host.is_windows:
            context.execute('w32tm /resync')

            return True

        ntp_server = context.options['ntp_server']

        context.logger.verbose('ntp server', ntp_server, color='green')

        context.execute(
            ShellScript(f'ntpdate -u -t {NTPDATE_TIMEOUT} {shlex.quote(ntp_server)}')
            | ShellScript('chronyc makestep'))

        return True
