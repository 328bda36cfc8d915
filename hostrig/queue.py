"""
Running tasks over hosts or backends, one by one or in parallel.

A task is applied to a list of "units", hosts or backends, and an
execution strategy decides how the units are processed. Both strategies
yield the very same outcomes, only the order in which units complete may
differ.
"""

import copy
import dataclasses
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Callable, Generic, Optional, ParamSpec, TypeVar, Union

from hostrig.host import Host, Transport, default_transport
from hostrig.log import Logger, Topic
from hostrig.options import GlobalOptions, Phase
from hostrig.utils import IsolationError

if TYPE_CHECKING:
    from typing import Self


P = ParamSpec('P')
UnitT = TypeVar('UnitT')
TaskResultT = TypeVar('TaskResultT')

#: Batches smaller than this are not worth a pool of workers.
MIN_PARALLEL_UNITS = 2

#: Creates a transport for the given host, given global options.
TransportFactory = Callable[[Host, GlobalOptions], Transport]


class Task(Generic[TaskResultT]):
    """
    A base class for queueable actions.

    .. note::

        The class provides both the implementation of the action, but
        also serves as a container for outcome of the action: every time
        the task is invoked by a strategy, the strategy yields an
        instance of the same class, but filled with information related
        to the result of its action.
    """

    #: A logger to use for logging events related to the outcome.
    logger: Logger

    #: Result returned by the task when executed.
    result: Optional[TaskResultT] = None

    #: If set, an exception was raised by the running task, and said
    #: exception is saved in this field.
    exc: Optional[Exception] = None

    #: If set, the task raised :py:class:`SystemExit` exception, and
    #: wants to terminate the run completely. Original exception is
    #: assigned to this field.
    requested_exit: Optional[SystemExit] = None

    def __init__(self, logger: Logger) -> None:
        self.logger = logger

    @property
    def name(self) -> str:
        """
        A name of this task.

        Left for child classes to implement, because the name depends on
        the actual task.
        """

        raise NotImplementedError

    def _extract_task_outcome(
            self,
            logger: Logger,
            extract: Callable[P, TaskResultT],
            *args: P.args,
            **kwargs: P.kwargs) -> 'Self':
        """
        A helper for extracting the task outcome and recording it.

        :param logger: used for logging, and will be attached to the
            returned instance.
        :param extract: a callable responsible for extracting outcome
            of the task. It will be passed rest of positional and
            keyword arguments.
        :returns: new instance of this class, with :py:attr:`logger`,
            :py:attr:`result`, :py:attr:`exc` and
            :py:attr:`requested_exit` attributes filled according to the
            result of ``extract``.
        """

        task = copy.copy(self)

        task.logger = logger
        task.result = None
        task.exc = None
        task.requested_exit = None

        try:
            task.result = extract(*args, **kwargs)

        except SystemExit as exc:
            task.requested_exit = exc

        except Exception as exc:
            task.exc = exc

        return task


class MultiUnitTask(Task[TaskResultT], Generic[UnitT, TaskResultT]):
    """
    A task applied to each of a list of units.

    Subclasses implement :py:meth:`run_on_unit` and :py:meth:`get_label`,
    the strategy given to the task decides whether units are processed
    one after another or in parallel.
    """

    #: Units to run the task on.
    units: list[UnitT]

    #: Unit on which the task was executed, set in yielded outcomes.
    unit: Optional[UnitT] = None

    def __init__(
            self,
            units: list[UnitT],
            strategy: 'ExecutionStrategy',
            logger: Logger) -> None:
        super().__init__(logger)

        self.units = units
        self.strategy = strategy

    def get_label(self, unit: UnitT) -> str:
        """ A short name of the unit, used as a logging label """

        raise NotImplementedError

    def run_on_unit(self, unit: UnitT, logger: Logger) -> TaskResultT:
        """
        Perform the task.

        Called once for each unit. Subclasses must implement their logic
        in this method rather than in :py:meth:`go` which is already
        provided.
        """

        raise NotImplementedError

    def outcome_for(
            self,
            unit: UnitT,
            logger: Logger,
            extract: Optional[Callable[[], TaskResultT]] = None) -> 'Self':
        """
        Create an outcome of the task for the given unit.

        :param extract: if set, the outcome is extracted from this callable,
            e.g. a ``Future.result``. Otherwise the task runs right away.
        """

        if extract is None:
            task = self._extract_task_outcome(logger, self.run_on_unit, unit, logger)

        else:
            task = self._extract_task_outcome(logger, extract)

        task.unit = unit

        return task

    def go(self) -> Iterator['Self']:
        """
        Perform the task.

        :yields: instances of the same class, one for each unit, describing
            invocations of the task and their outcome.
        """

        self.logger.debug(
            f"Run '{self.name}' over {len(self.units)} units using {self.strategy.name}.",
            topic=Topic.DISPATCH)

        yield from self.strategy.execute(self, self.logger)


def prepare_loggers(logger: Logger, labels: list[str]) -> dict[str, Logger]:
    """
    Create loggers for a set of labels.

    Units of a task are processed at the same time, therefore their labels
    need to be set, to provide context, plus their labels need to be
    properly aligned for more readable output.
    """

    loggers: dict[str, Logger] = {}

    # First, spawn all loggers, and set their labels if needed.
    # Don't bother with labels if there's just a single unit.
    for label in labels:
        new_logger = logger.clone()

        if len(labels) > 1:
            new_logger.labels.append(label)

        loggers[label] = new_logger

    if not loggers:
        return loggers

    # Second, find the longest label, and instruct all loggers to pad their
    # labels to match this length. This should create well-indented messages.
    max_label_span = max(new_logger.labels_span for new_logger in loggers.values())

    for new_logger in loggers.values():
        new_logger.labels_padding = max_label_span

    return loggers


class ExecutionStrategy:
    """ Decides how units of a task are processed """

    #: Name of the strategy, for logging.
    name: str

    def execute(
            self,
            task: MultiUnitTask[UnitT, TaskResultT],
            logger: Logger) -> Iterator[MultiUnitTask[UnitT, TaskResultT]]:
        raise NotImplementedError


class SequentialStrategy(ExecutionStrategy):
    """
    Process units one after another, in the order of the list.

    Outcomes are yielded as soon as each unit is done, and the next unit is
    started only when the consumer asks for it. A consumer which stops
    iterating stops the whole batch.
    """

    name = 'sequential'

    def execute(
            self,
            task: MultiUnitTask[UnitT, TaskResultT],
            logger: Logger) -> Iterator[MultiUnitTask[UnitT, TaskResultT]]:
        for unit in task.units:
            yield task.outcome_for(unit, logger)


class ParallelStrategy(ExecutionStrategy):
    """
    Process each unit in its own worker thread.

    All units are dispatched first, then the strategy waits for all of them
    to finish. Outcomes are yielded in the order in which units complete.
    """

    name = 'parallel'

    def __init__(self, max_workers: Optional[int] = None) -> None:
        self.max_workers = max_workers

    def _dispatch(
            self,
            executor: ThreadPoolExecutor,
            task: MultiUnitTask[UnitT, TaskResultT],
            unit: UnitT,
            logger: Logger) -> 'Future[TaskResultT]':
        """ Hand a single unit over to a worker """

        return executor.submit(task.run_on_unit, unit, logger)

    def _run_sequentially(
            self,
            task: MultiUnitTask[UnitT, TaskResultT],
            units: list[UnitT],
            loggers: dict[str, Logger]) -> Iterator[MultiUnitTask[UnitT, TaskResultT]]:
        for unit in units:
            yield task.outcome_for(unit, loggers[task.get_label(unit)])

    def execute(
            self,
            task: MultiUnitTask[UnitT, TaskResultT],
            logger: Logger) -> Iterator[MultiUnitTask[UnitT, TaskResultT]]:
        units = task.units

        if len(units) < MIN_PARALLEL_UNITS:
            logger.debug(
                f'Only {len(units)} unit, no need for workers.', level=2, topic=Topic.DISPATCH)

            yield from SequentialStrategy().execute(task, logger)
            return

        loggers = prepare_loggers(logger, [task.get_label(unit) for unit in units])

        try:
            executor = ThreadPoolExecutor(max_workers=self.max_workers or len(units))

        except (RuntimeError, ValueError) as exc:
            logger.warning(str(IsolationError(f'Cannot start workers: {exc}')))

            yield from self._run_sequentially(task, units, loggers)
            return

        with executor:
            futures: dict[Future[TaskResultT], UnitT] = {}
            pending = list(units)

            while pending:
                unit = pending[0]
                label = task.get_label(unit)

                try:
                    future = self._dispatch(executor, task, unit, loggers[label])

                except RuntimeError as exc:
                    logger.warning(str(IsolationError(
                        f"Cannot dispatch '{label}' to a worker, running"
                        f" {len(pending)} remaining units sequentially: {exc}")))
                    break

                logger.debug(f"Dispatched '{label}'.", level=2, topic=Topic.DISPATCH)

                loggers[label].info('started', color='cyan')

                futures[future] = unit
                pending.pop(0)

            # Wait for everything dispatched, then deal with the rest.
            for future in as_completed(futures):
                unit = futures[future]
                unit_logger = loggers[task.get_label(unit)]

                unit_logger.info('finished', color='cyan')

                yield task.outcome_for(unit, unit_logger, extract=future.result)

        yield from self._run_sequentially(task, pending, loggers)


@dataclasses.dataclass
class ExecutionContext:
    """ Everything a run needs besides hosts and options """

    logger: Logger

    #: Creates transports used by configuration steps.
    transport_factory: Optional[TransportFactory] = None

    def strategy_for(
            self,
            phase: Union[Phase, str],
            options: GlobalOptions) -> ExecutionStrategy:
        """ Pick the strategy for the given phase of a run """

        strategy: ExecutionStrategy

        if options.is_parallel(phase):
            strategy = ParallelStrategy(max_workers=options.max_workers)

        else:
            strategy = SequentialStrategy()

        self.logger.debug(
            f"Phase '{Phase(phase).value}' runs {strategy.name}.",
            level=2,
            topic=Topic.DISPATCH)

        return strategy

    def create_transport(self, host: Host, options: GlobalOptions) -> Transport:
        if self.transport_factory is not None:
            return self.transport_factory(host, options)

        return default_transport(host, options)
