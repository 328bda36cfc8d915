"""
Orchestration options and their per-host resolution.

:py:class:`GlobalOptions` hold the settings shared by all hosts of a run.
Each :py:class:`hostrig.host.Host` may carry its own options, using the
very same keys, and a host value always wins over the global one: a host
saying ``timesync: false`` keeps the clock alone even when the run asks
for ``timesync: true``. Values are not merged, the host value replaces
the global one as a whole.
"""

import enum
from typing import TYPE_CHECKING, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from hostrig.container import key_to_option
from hostrig.log import Logger, Topic

if TYPE_CHECKING:
    from hostrig.host import Host


class Phase(str, enum.Enum):
    """ Phases of a run which may be executed in parallel """

    PROVISION = 'provision'
    CONFIGURE = 'configure'


class StepFailurePolicy(str, enum.Enum):
    """ What happens to the remaining steps of a host when one of them fails """

    #: Skip the remaining steps of the failed host.
    ABORT_HOST = 'abort-host'

    #: Keep running the remaining steps of the failed host.
    CONTINUE = 'continue'


#: Authorized keys manager script fetched by the ``sync_root_keys`` step.
DEFAULT_ROOT_KEYS_URL = \
    'https://raw.githubusercontent.com/puppetlabs/puppetlabs-sshkeys/master/' \
    'templates/scripts/manage_root_authorized_keys'

#: EPEL release package installed by the ``add_el_extras`` step.
DEFAULT_EPEL_URL = \
    'https://dl.fedoraproject.org/pub/epel/epel-release-latest-{version}.noarch.rpm'

#: Update servers redirected to loopback by the ``disable_updates`` step.
DEFAULT_UPDATE_HOSTS = ['updates.puppetlabs.com', 'updates.puppet.com']


class GlobalOptions(BaseModel):
    """
    Options shared by all hosts of a run.

    The model is frozen: nothing may change it while a run is in progress.
    Keys are accepted both with underscores and with dashes.
    """

    model_config = ConfigDict(
        alias_generator=key_to_option,
        populate_by_name=True,
        extra='forbid',
        frozen=True,
        )

    # Configuration steps
    configure: bool = True
    timesync: bool = False
    ntp_server: str = 'pool.ntp.org'
    root_keys: bool = False
    root_keys_url: str = DEFAULT_ROOT_KEYS_URL
    add_el_extras: bool = False
    epel_url: str = DEFAULT_EPEL_URL
    disable_iptables: bool = False
    disable_updates: bool = False
    update_hosts: list[str] = Field(default_factory=lambda: list(DEFAULT_UPDATE_HOSTS))
    host_name_prefix: str = ''
    host_env: dict[str, str] = Field(default_factory=dict)

    # Execution
    run_in_parallel: frozenset[Phase] = frozenset()
    max_workers: Optional[int] = Field(default=None, ge=1)
    step_failure_policy: StepFailurePolicy = StepFailurePolicy.ABORT_HOST

    # Backends
    hypervisor: Optional[str] = None
    pooling_api: bool = True
    pooling_url: Optional[str] = None
    workdir: str = '.hostrig'

    # Transport
    ssh_user: str = 'root'
    ssh_port: int = 22
    ssh_key: Optional[str] = None
    ssh_options: list[str] = Field(default_factory=list)
    command_timeout: Optional[int] = Field(default=None, ge=1)

    def is_parallel(self, phase: Union[Phase, str]) -> bool:
        """ Whether the given phase should run its work in parallel """

        return Phase(phase) in self.run_in_parallel

    def updated(self, **changes: Any) -> 'GlobalOptions':
        """ Return a validated copy of these options with some keys changed """

        return GlobalOptions.model_validate({**self.model_dump(), **changes})


def effective(
        global_options: GlobalOptions,
        host: 'Host',
        key: str,
        default: Any = None,
        logger: Optional[Logger] = None) -> Any:
    """
    Resolve the value of an option for the given host.

    :param global_options: options of the run.
    :param host: host whose options take precedence.
    :param key: option to resolve, e.g. ``timesync``.
    :param default: returned when neither the host nor the global options
        know the key.
    :param logger: if set, the decision is logged under the
        ``option-resolution`` topic.
    """

    if key in host.options:
        value, origin = host.options[key], 'host'

    elif key in GlobalOptions.model_fields:
        value, origin = getattr(global_options, key), 'global'

    else:
        value, origin = default, 'default'

    if logger is not None:
        logger.debug(
            f"Option '{key}' of '{host.name}'",
            f'{value!r} ({origin})',
            level=3,
            topic=Topic.OPTION_RESOLUTION)

    return value


class OptionView:
    """
    Effective options of a single host.

    Every lookup is resolved again, nothing is cached, therefore changes
    made to host options by earlier configuration steps are visible to
    the later ones.
    """

    def __init__(
            self,
            global_options: GlobalOptions,
            host: 'Host',
            logger: Optional[Logger] = None) -> None:
        self.global_options = global_options
        self.host = host
        self._logger = logger

    def __getitem__(self, key: str) -> Any:
        return effective(self.global_options, self.host, key, logger=self._logger)

    def get(self, key: str, default: Any = None) -> Any:
        return effective(self.global_options, self.host, key, default=default,
                         logger=self._logger)

    def __repr__(self) -> str:
        return f'<OptionView: host={self.host.name}>'
