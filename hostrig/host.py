"""
Hosts and the ways of running commands on them.
"""

import copy
import re
import shlex
from typing import Any, Optional, Protocol

from hostrig.container import container, simple_field
from hostrig.log import Logger
from hostrig.options import GlobalOptions, OptionView, effective
from hostrig.utils import Command, CommandOutput, Environment, ShellScript

#: Options passed to every ssh invocation. Hosts are provisioned again and
#: again under the same names, their keys change all the time.
BASE_SSH_OPTIONS: list[str] = [
    '-oForwardX11=no',
    '-oStrictHostKeyChecking=no',
    '-oUserKnownHostsFile=/dev/null',
    '-oConnectionAttempts=5',
    '-oConnectTimeout=60',
    '-oServerAliveInterval=5',
    '-oServerAliveCountMax=60',
    '-oLogLevel=ERROR',
    ]

#: Platforms are usually written as ``<family>-<version>-<arch>``.
EL_PLATFORM_PATTERN = re.compile(r'^el-(?P<version>\d+)(?:-|$)')


@container
class Host:
    """
    A host to provision and configure.

    ``options`` hold per-host overrides of global options, plus values
    produced by backends and configuration steps, e.g. ``ip`` or
    ``vmhostname``.
    """

    name: str
    platform: str = ''
    options: dict[str, Any] = simple_field(default_factory=dict)

    @property
    def address(self) -> str:
        """ Address to connect to, the best one known so far """

        return str(self.options.get('ip') or self.options.get('vmhostname') or self.name)

    @property
    def family(self) -> str:
        """ Operating system family, e.g. ``el``, ``ubuntu`` or ``windows`` """

        return self.platform.split('-', 1)[0].lower()

    @property
    def is_windows(self) -> bool:
        return self.family in ('windows', 'win')

    @property
    def el_version(self) -> Optional[int]:
        """ Major version of an Enterprise Linux platform, ``None`` for others """

        match = EL_PLATFORM_PATTERN.match(self.platform)

        return int(match.group('version')) if match else None

    def copy(self) -> 'Host':
        """ Create a private, deep copy of the host """

        return Host(name=self.name, platform=self.platform, options=copy.deepcopy(self.options))


class Transport(Protocol):
    """ Runs shell scripts on a single host """

    def execute(
            self,
            script: ShellScript,
            *,
            env: Optional[Environment] = None,
            friendly_command: Optional[str] = None,
            logger: Logger) -> CommandOutput:
        pass


def _export_environment(env: Optional[Environment]) -> list[ShellScript]:
    """ Prepare shell scripts exporting given variables """

    return [
        ShellScript(f'export {name}={shlex.quote(value)}')
        for name, value in sorted((env or {}).items())
        ]


class SshTransport:
    """ Execute scripts on a remote host over ssh """

    def __init__(
            self,
            host: Host,
            user: str = 'root',
            port: int = 22,
            key: Optional[str] = None,
            options: Optional[list[str]] = None,
            timeout: Optional[int] = None) -> None:
        self.host = host
        self.user = user
        self.port = port
        self.key = key
        self.options = options or []
        self.timeout = timeout

    @classmethod
    def from_options(cls, host: Host, global_options: GlobalOptions) -> 'SshTransport':
        """ Create a transport using the effective ssh options of the host """

        view = OptionView(global_options, host)

        return SshTransport(
            host,
            user=view['ssh_user'],
            port=view['ssh_port'],
            key=view['ssh_key'],
            options=view['ssh_options'],
            timeout=view['command_timeout'])

    @property
    def _ssh_options(self) -> list[str]:
        options = BASE_SSH_OPTIONS[:]

        if self.key:
            # Skip ssh-agent, it adds additional identities
            options.append('-oIdentitiesOnly=yes')
            options.extend(['-i', self.key])

        if self.port:
            options.extend(['-p', str(self.port)])

        options.extend(
            option if option.startswith('-') else f'-o{option}'
            for option in self.options)

        return options

    @property
    def _ssh_command(self) -> Command:
        return Command('ssh', *self._ssh_options)

    @property
    def _ssh_host(self) -> str:
        return f'{self.user}@{self.host.address}'

    def execute(
            self,
            script: ShellScript,
            *,
            env: Optional[Environment] = None,
            friendly_command: Optional[str] = None,
            logger: Logger) -> CommandOutput:
        remote_script = ShellScript.from_scripts([*_export_environment(env), script])

        logger.debug(f"Execute '{remote_script}' on '{self.host.address}'.", level=2)

        command = self._ssh_command + [self._ssh_host, str(remote_script)]

        return command.run(
            timeout=self.timeout,
            friendly_command=friendly_command or str(script),
            logger=logger)


class LocalTransport:
    """ Execute scripts on the machine running the orchestrator """

    def __init__(self, host: Host, timeout: Optional[int] = None) -> None:
        self.host = host
        self.timeout = timeout

    @classmethod
    def from_options(cls, host: Host, global_options: GlobalOptions) -> 'LocalTransport':
        return LocalTransport(host, timeout=effective(global_options, host, 'command_timeout'))

    def execute(
            self,
            script: ShellScript,
            *,
            env: Optional[Environment] = None,
            friendly_command: Optional[str] = None,
            logger: Logger) -> CommandOutput:
        logger.debug(f"Execute '{script}' locally.", level=2)

        return script.to_shell_command().run(
            env=env,
            timeout=self.timeout,
            friendly_command=friendly_command or str(script),
            logger=logger)


def default_transport(host: Host, global_options: GlobalOptions) -> Transport:
    """
    Pick a transport for the given host.

    Hosts with ``local: true`` among their options are the machine running
    the orchestrator, all other hosts are reached over ssh.
    """

    if host.options.get('local', False):
        return LocalTransport.from_options(host, global_options)

    return SshTransport.from_options(host, global_options)
