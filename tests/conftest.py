import threading
from typing import Any, Callable, Optional

import _pytest.logging
import pytest

from hostrig.host import Host
from hostrig.log import Logger
from hostrig.options import GlobalOptions
from hostrig.queue import ExecutionContext
from hostrig.utils import CommandOutput, Environment, RunError, ShellScript


@pytest.fixture(name='root_logger')
def fixture_root_logger(caplog: _pytest.logging.LogCaptureFixture) -> Logger:
    """
    A logger to use for logging and/or spawning logger hierarchy.
    """

    return Logger.create(verbose=0, debug=0, quiet=False, apply_colors_logging=False)


class RecordingTransport:
    """ A transport recording scripts instead of running them """

    def __init__(self, host: Host, recorder: 'TransportRecorder') -> None:
        self.host = host
        self.recorder = recorder

    def execute(
            self,
            script: ShellScript,
            *,
            env: Optional[Environment] = None,
            friendly_command: Optional[str] = None,
            logger: Logger) -> CommandOutput:
        return self.recorder.record(self.host, script, env)


class TransportRecorder:
    """
    Creates recording transports and collects what they were asked to run.

    Scripts containing any of ``failing`` substrings fail with
    :py:class:`RunError`.
    """

    def __init__(self) -> None:
        self.scripts: list[tuple[str, str]] = []
        self.environments: dict[str, Optional[Environment]] = {}
        self.failing: set[str] = set()
        self.threads: dict[str, str] = {}

        self._lock = threading.Lock()

    def __call__(self, host: Host, options: GlobalOptions) -> RecordingTransport:
        return RecordingTransport(host, self)

    def record(self, host: Host, script: ShellScript, env: Optional[Environment]) -> CommandOutput:
        with self._lock:
            self.scripts.append((host.name, str(script)))
            self.environments[host.name] = dict(env) if env else None
            self.threads[host.name] = threading.current_thread().name

        if any(pattern in str(script) for pattern in self.failing):
            raise RunError(f"Command '{script}' returned 1.", script.to_shell_command(), 1)

        return CommandOutput('', '')

    def scripts_of(self, name: str) -> list[str]:
        return [script for host, script in self.scripts if host == name]


@pytest.fixture(name='recorder')
def fixture_recorder() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture(name='execution_context')
def fixture_execution_context(
        root_logger: Logger,
        recorder: TransportRecorder) -> ExecutionContext:
    return ExecutionContext(logger=root_logger, transport_factory=recorder)


@pytest.fixture(name='make_hosts')
def fixture_make_hosts() -> Callable[..., list[Host]]:
    """
    Create hosts ``vm1``, ``vm2``, ... sharing the platform and options.
    """

    def _make_hosts(count: int = 3, platform: str = 'el-5', **options: Any) -> list[Host]:
        return [
            Host(name=f'vm{index}', platform=platform, options=dict(options))
            for index in range(1, count + 1)
            ]

    return _make_hosts
