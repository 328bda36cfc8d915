import shlex

from hostrig.steps import Step, StepContext, provides_step
from hostrig.utils import ShellScript

SSHD_CONFIG = '/etc/ssh/sshd_config'

ENABLE_USER_ENVIRONMENT = ShellScript(f"""
if grep -q '^#\\?PermitUserEnvironment' {SSHD_CONFIG}; then
    sed -i 's/^#\\?PermitUserEnvironment.*/PermitUserEnvironment yes/' {SSHD_CONFIG}
else
    echo 'PermitUserEnvironment yes' >> {SSHD_CONFIG}
fi
""".strip())

RESTART_SSHD = ShellScript('systemctl restart sshd') \
    | ShellScript('service sshd restart') \
    | ShellScript('service ssh restart')


@provides_step('set_env', order=10)
class SetEnv(Step):
    """
    Set up the environment of ssh sessions.

    Variables of ``host-env`` are written into ``~/.ssh/environment``, and
    sshd is told to honor the file. The environment is recorded among host
    options, later steps export it as well.
    """

    FLAG = 'configure'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        environment = {
            str(name): str(value)
            for name, value in (context.options['host_env'] or {}).items()
            }

        if context.host.is_windows:
            context.logger.verbose('set_env', 'not supported on Windows, recording only')

        else:
            lines = ' '.join(
                shlex.quote(f'{name}={value}') for name, value in sorted(environment.items()))

            # An empty file still replaces whatever was there before
            write_environment = ShellScript(
                f"mkdir -p ~/.ssh && chmod 0700 ~/.ssh && printf '%s\\n' {lines} > ~/.ssh/environment"
                if lines else 'mkdir -p ~/.ssh && chmod 0700 ~/.ssh && : > ~/.ssh/environment')

            context.execute(
                write_environment & ENABLE_USER_ENVIRONMENT,
                friendly_command='write ~/.ssh/environment')
            context.execute(RESTART_SSHD)

        context.set_option('environment', environment)

        return True
