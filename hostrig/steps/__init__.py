"""
Configuration steps applied to provisioned hosts.

Steps form an ordered catalog, every step is registered with
:py:func:`provides_step` and governed by a single option, its flag. A step
runs on a host only when its flag resolves to a true value for that host,
see :py:func:`hostrig.options.effective`.
"""

from collections.abc import Callable
from typing import Any, Optional, Union

import hostrig.plugins
import hostrig.queue
from hostrig.host import Host, Transport
from hostrig.log import Logger, Topic
from hostrig.options import GlobalOptions, OptionView, StepFailurePolicy
from hostrig.plugins import PluginRegistry
from hostrig.result import HostResult, ResultOutcome, StepResult, worst_outcome
from hostrig.utils import CommandOutput, GeneralError, ShellScript, StepError

StepClass = type['Step']
_STEP_REGISTRY: PluginRegistry[StepClass] = PluginRegistry('steps')


def provides_step(name: str, order: int) -> Callable[[StepClass], StepClass]:
    """
    A decorator for registering configuration steps.

    Decorate a step class to add it to the catalog:

    .. code-block:: python

        @provides_step('timesync', order=20)
        class Timesync(Step):
            ...

    :param name: name of the step.
    :param order: position of the step in the catalog, steps with lower
        order run first.
    """

    def _provides_step(step_cls: StepClass) -> StepClass:
        step_cls.STEP_NAME = name
        step_cls.ORDER = order

        _STEP_REGISTRY.register_plugin(
            plugin_id=name,
            plugin=step_cls,
            logger=Logger.get_bootstrap_logger())

        return step_cls

    return _provides_step


def find_step(name: str) -> StepClass:
    """
    Find a step by its name.

    :raises GeneralError: when the step does not exist.
    """

    step = _STEP_REGISTRY.get_plugin(name)

    if step is None:
        raise GeneralError(f"Step '{name}' was not found in the step registry.")

    return step


def catalog(logger: Logger) -> list[StepClass]:
    """ All known steps, in the order in which they run """

    hostrig.plugins.explore(logger)

    return sorted(_STEP_REGISTRY.iter_plugins(), key=lambda step: (step.ORDER, step.STEP_NAME))


class StepContext:
    """
    Everything a step may touch while running on a host.

    ``host`` is the private working copy of the host. Option values the
    step wants to keep for later steps, or for the caller, are recorded
    with :py:meth:`set_option`.
    """

    def __init__(
            self,
            host: Host,
            options: OptionView,
            transport: Transport,
            logger: Logger) -> None:
        self.host = host
        self.options = options
        self.transport = transport
        self.logger = logger

    def execute(
            self,
            script: Union[ShellScript, str],
            friendly_command: Optional[str] = None) -> CommandOutput:
        """
        Run a script on the host.

        The environment recorded by the ``set_env`` step, if any, is
        exported first.
        """

        if isinstance(script, str):
            script = ShellScript(script)

        return self.transport.execute(
            script,
            env=self.host.options.get('environment') or None,
            friendly_command=friendly_command,
            logger=self.logger)

    def set_option(self, key: str, value: Any) -> None:
        self.logger.debug(f"Set '{key}' of '{self.host.name}'", repr(value), level=2)

        self.host.options[key] = value


class Step:
    """ Base class for configuration steps """

    STEP_NAME: str
    ORDER: int

    #: Option governing the step. The step is enabled when the option
    #: resolves to a true value, steps without a flag are always enabled.
    FLAG: Optional[str] = None

    @classmethod
    def is_enabled(cls, options: OptionView) -> bool:
        if cls.FLAG is None:
            return True

        return bool(options[cls.FLAG])

    @classmethod
    def apply(cls, context: StepContext) -> bool:
        """
        Run the step on a host.

        :returns: ``True`` when the step succeeded.
        :raises GeneralError: when the step failed.
        """

        raise NotImplementedError


def is_host_configurable(options: OptionView) -> bool:
    """ Whether configuration of the host was not turned off as a whole """

    return bool(options['configure'])


def plan_for(host: Host, global_options: GlobalOptions, logger: Logger) -> list[StepClass]:
    """
    Steps which are going to run on the host, as far as we can tell now.

    Gates are evaluated again right before each step runs, a step may
    change options governing the later ones.
    """

    if not global_options.configure:
        return []

    view = OptionView(global_options, host, logger)

    if not is_host_configurable(view):
        return []

    return [step for step in catalog(logger) if step.is_enabled(view)]


class ConfigureTask(hostrig.queue.MultiUnitTask[Host, HostResult]):
    """
    A task to run configuration steps on multiple hosts.

    Each host is configured on its private copy, changes made by steps
    are reported in :py:attr:`HostResult.updates` and never touch the host
    given to the task.
    """

    def __init__(
            self,
            units: list[Host],
            options: GlobalOptions,
            context: hostrig.queue.ExecutionContext,
            strategy: hostrig.queue.ExecutionStrategy,
            logger: Logger) -> None:
        super().__init__(units, strategy, logger)

        self.options = options
        self.context = context

    @property
    def name(self) -> str:
        return 'configure'

    def get_label(self, unit: Host) -> str:
        return unit.name

    def _run_step(self, step: StepClass, context: StepContext) -> StepResult:
        logger = context.logger

        logger.verbose('step', step.STEP_NAME, color='green')

        try:
            if step.apply(context):
                return StepResult(name=step.STEP_NAME)

            error = StepError(
                f"Step '{step.STEP_NAME}' failed on '{context.host.name}'.",
                host=context.host.name,
                step=step.STEP_NAME)

        except GeneralError as exc:
            error = StepError(
                f"Step '{step.STEP_NAME}' failed on '{context.host.name}'.",
                host=context.host.name,
                step=step.STEP_NAME,
                causes=[exc])

        logger.fail(error.message)

        for cause in error.causes:
            logger.fail(str(cause), shift=1)

        return StepResult(
            name=step.STEP_NAME,
            result=ResultOutcome.FAIL,
            note=str(error.causes[0]) if error.causes else None)

    def run_on_unit(self, unit: Host, logger: Logger) -> HostResult:
        host = unit.copy()
        view = OptionView(self.options, host, logger)

        context = StepContext(
            host,
            view,
            self.context.create_transport(host, self.options),
            logger)

        results: list[StepResult] = []
        aborted = False

        for step in catalog(logger):
            if not is_host_configurable(view) or not step.is_enabled(view):
                logger.debug(
                    f"Skip '{step.STEP_NAME}', disabled by '{step.FLAG}'.",
                    topic=Topic.STEP_GATING)
                continue

            if aborted:
                logger.debug(
                    f"Skip '{step.STEP_NAME}', an earlier step failed.",
                    topic=Topic.STEP_GATING)

                results.append(StepResult(
                    name=step.STEP_NAME,
                    result=ResultOutcome.SKIP,
                    note='earlier step failed'))
                continue

            result = self._run_step(step, context)
            results.append(result)

            if result.result == ResultOutcome.FAIL \
                    and self.options.step_failure_policy == StepFailurePolicy.ABORT_HOST:
                aborted = True

        updates = {
            key: value
            for key, value in host.options.items()
            if key not in unit.options or unit.options[key] != value
            }

        if not results:
            result = HostResult.skipped(unit.name, 'no steps enabled')
            result.updates = updates

            return result

        outcome = worst_outcome([result.result for result in results])
        failed = [result.name for result in results if result.result == ResultOutcome.FAIL]

        return HostResult(
            name=unit.name,
            result=outcome,
            steps=results,
            reason=f"failed steps: {', '.join(failed)}" if failed else None,
            updates=updates)
