import secrets
import shlex
import string
import threading

from hostrig.steps import Step, StepContext, provides_step

#: Characters of generated host name suffixes.
HOST_NAME_CHARACTERS = string.ascii_lowercase + string.digits

#: Length of generated host name suffixes.
HOST_NAME_SUFFIX_LENGTH = 15

#: Host option recording the name given by the hostname step.
ASSIGNED_HOSTNAME_KEY = 'assigned_hostname'

_ISSUED_NAMES: set[str] = set()
_ISSUED_NAMES_LOCK = threading.Lock()


def _random_suffix() -> str:
    return ''.join(secrets.choice(HOST_NAME_CHARACTERS) for _ in range(HOST_NAME_SUFFIX_LENGTH))


def generate_host_name(prefix: str = '') -> str:
    """
    Generate a host name no one else in this process got before.

    :param prefix: prepended to a random suffix of lowercase letters and
        digits.
    """

    with _ISSUED_NAMES_LOCK:
        while True:
            name = f'{prefix}{_random_suffix()}'

            if name not in _ISSUED_NAMES:
                _ISSUED_NAMES.add(name)

                return name


@provides_step('hostname', order=70)
class Hostname(Step):
    """
    Give the host a generated name.

    Enabled by a non-empty ``host-name-prefix``, the new name is recorded
    as ``assigned_hostname`` of the host. Addresses of the host are left
    untouched, the new name is not known to any DNS.
    """

    FLAG = 'host_name_prefix'

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        name = generate_host_name(context.options['host_name_prefix'])

        context.logger.verbose('hostname', name, color='green')

        context.execute(f'hostname {shlex.quote(name)}')
        context.set_option(ASSIGNED_HOSTNAME_KEY, name)

        return True
