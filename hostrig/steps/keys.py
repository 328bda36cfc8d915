import shlex

from hostrig.steps import Step, StepContext, provides_step
from hostrig.utils import ShellScript


@provides_step('sync_root_keys', order=30)
class SyncRootKeys(Step):
    """
    Install authorized keys of root.

    The keys manager script is downloaded from ``root-keys-url`` and run
    on the host.
    """

    FLAG = 'root_keys'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        if context.host.is_windows:
            context.logger.warning(f"Cannot sync root keys of '{context.host.name}', a Windows host.")

            return False

        url = context.options['root_keys_url']

        context.execute(
            ShellScript(
                'set -o pipefail'
                f' && curl --fail --silent --show-error --location {shlex.quote(url)} | bash'),
            friendly_command=f'sync root keys from {url}')

        return True
