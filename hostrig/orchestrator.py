"""
Driving hosts through provisioning, configuration and cleanup.
"""

import enum
from typing import Optional

import hostrig.backends
from hostrig.backends import Backend, ProvisionTask
from hostrig.host import Host
from hostrig.log import Logger, Topic
from hostrig.options import GlobalOptions, Phase, effective
from hostrig.queue import ExecutionContext, SequentialStrategy
from hostrig.result import HostResult, ResultOutcome
from hostrig.steps import ConfigureTask, plan_for
from hostrig.utils import GeneralError, ProvisionError, UnknownBackendError


class RunState(enum.Enum):
    """ Where in its lifecycle an orchestrator is """

    NOT_STARTED = 'not-started'
    PROVISIONED = 'provisioned'
    CONFIGURING = 'configuring'
    CONFIGURED = 'configured'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.CONFIGURED, RunState.FAILED)


class Orchestrator:
    """
    Provision and configure a group of hosts.

    Hosts are split into groups by their ``hypervisor`` option, each group
    is handled by one backend. Configuration steps then run over all hosts,
    whatever backend provisioned them.
    """

    def __init__(
            self,
            hosts: list[Host],
            options: GlobalOptions,
            context: ExecutionContext) -> None:
        self.hosts = hosts
        self.options = options
        self.context = context

        self.state = RunState.NOT_STARTED
        self.backends: list[Backend] = []
        self.results: list[HostResult] = []

    @property
    def _logger(self) -> Logger:
        return self.context.logger

    @staticmethod
    def create(
            backend_type: str,
            hosts: list[Host],
            options: GlobalOptions,
            logger: Logger) -> Backend:
        """ Construct a backend for the given hosts, see :py:func:`hostrig.backends.create` """

        return hostrig.backends.create(backend_type, hosts, options, logger)

    def partition(self) -> dict[str, list[Host]]:
        """
        Group hosts by their backend type.

        Groups are ordered by the first appearance of their type among
        hosts, hosts keep their order within groups.

        :raises UnknownBackendError: when a host has no backend type.
        """

        partitions: dict[str, list[Host]] = {}

        for host in self.hosts:
            backend_type = effective(self.options, host, 'hypervisor', logger=self._logger)

            if not backend_type:
                raise UnknownBackendError(f"Host '{host.name}' has no 'hypervisor' set.")

            partitions.setdefault(str(backend_type), []).append(host)

        return partitions

    def provision(self) -> None:
        """
        Provision all hosts.

        All backends are constructed before any of them starts working.

        :raises UnknownBackendError: when a backend type is not known.
        :raises ProvisionError: when any backend failed.
        """

        if self.state != RunState.NOT_STARTED:
            raise GeneralError(f"Cannot provision hosts, the run is {self.state.value}.")

        self.backends = [
            self.create(backend_type, hosts, self.options, self._logger)
            for backend_type, hosts in self.partition().items()
            ]

        strategy = self.context.strategy_for(Phase.PROVISION, self.options)
        task = ProvisionTask(self.backends, strategy, self._logger)

        failures: list[Exception] = []
        requested_exit: Optional[SystemExit] = None

        for outcome in task.go():
            if outcome.requested_exit is not None:
                requested_exit = outcome.requested_exit

            elif outcome.exc is not None:
                failures.append(outcome.exc)

                # Without workers, there's no point in bothering other backends
                if isinstance(strategy, SequentialStrategy):
                    break

        if requested_exit is not None:
            self.state = RunState.FAILED
            raise requested_exit

        if failures:
            self.state = RunState.FAILED
            raise ProvisionError(
                f'Failed to provision hosts of {len(failures)} backends.',
                causes=failures)

        self.state = RunState.PROVISIONED

    def _merge(self, host: Host, result: HostResult) -> None:
        if not result.updates:
            return

        self._logger.debug(
            f"Update options of '{host.name}'",
            ', '.join(sorted(result.updates)),
            level=2)

        host.options.update(result.updates)

    def configure(self) -> list[HostResult]:
        """
        Run configuration steps on all hosts.

        :returns: results of all hosts, in the order of hosts.
        :raises GeneralError: when hosts were configured already.
        """

        if self.state.is_terminal or self.state == RunState.CONFIGURING:
            raise GeneralError(f"Cannot configure hosts, the run is {self.state.value}.")

        self.state = RunState.CONFIGURING

        if not self.options.configure:
            self._logger.verbose('configure', 'disabled, skipping all hosts', color='yellow')

            self.results = [
                HostResult.skipped(host.name, 'configuration disabled') for host in self.hosts
                ]
            self.state = RunState.CONFIGURED

            return self.results

        results: dict[str, HostResult] = {}
        pending: list[Host] = []

        for host in self.hosts:
            plan = plan_for(host, self.options, self._logger)

            self._logger.debug(
                f"Steps planned for '{host.name}'",
                ', '.join(step.STEP_NAME for step in plan) or 'none',
                topic=Topic.STEP_GATING)

            if plan:
                pending.append(host)

            else:
                results[host.name] = HostResult.skipped(host.name, 'no steps enabled')

        strategy = self.context.strategy_for(Phase.CONFIGURE, self.options)
        task = ConfigureTask(pending, self.options, self.context, strategy, self._logger)

        requested_exit: Optional[SystemExit] = None
        unexpected: list[Exception] = []

        for outcome in task.go():
            host = outcome.unit

            assert host is not None

            if outcome.requested_exit is not None:
                requested_exit = outcome.requested_exit

            elif isinstance(outcome.exc, GeneralError):
                outcome.logger.fail(str(outcome.exc))

                results[host.name] = HostResult(
                    name=host.name,
                    result=ResultOutcome.FAIL,
                    reason=str(outcome.exc))

            elif outcome.exc is not None:
                unexpected.append(outcome.exc)

            elif outcome.result is not None:
                self._merge(host, outcome.result)
                results[host.name] = outcome.result

        if requested_exit is not None:
            self.state = RunState.FAILED
            raise requested_exit

        if unexpected:
            self.state = RunState.FAILED
            raise unexpected[0]

        self.results = [results[host.name] for host in self.hosts]
        self.state = RunState.FAILED \
            if any(result.failed for result in self.results) else RunState.CONFIGURED

        return self.results

    def cleanup(self) -> None:
        """
        Release hosts of all backends, in the reverse order of provisioning.

        :raises GeneralError: when any backend failed to clean up. All
            backends are given a chance to clean up nevertheless.
        """

        errors: list[Exception] = []

        for backend in reversed(self.backends):
            self._logger.verbose('cleanup', backend.name, color='cyan')

            try:
                backend.cleanup()

            except GeneralError as exc:
                errors.append(exc)

        if errors:
            raise GeneralError(
                f'Failed to clean up {len(errors)} backends.',
                causes=errors)

    def run(self) -> list[HostResult]:
        """ Provision hosts, then configure them """

        self.provision()

        return self.configure()
