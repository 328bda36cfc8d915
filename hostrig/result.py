import enum
from typing import Any, Optional

import click

import hostrig.utils
from hostrig.container import container, simple_field


class ResultOutcome(enum.Enum):
    PASS = 'pass'
    FAIL = 'fail'
    SKIP = 'skip'

    @classmethod
    def from_spec(cls, spec: str) -> 'ResultOutcome':
        try:
            return ResultOutcome(spec)
        except ValueError:
            raise hostrig.utils.SpecificationError(f"Invalid result outcome '{spec}'.")


RESULT_OUTCOME_COLORS: dict[ResultOutcome, str] = {
    ResultOutcome.PASS: 'green',
    ResultOutcome.FAIL: 'red',
    ResultOutcome.SKIP: 'bright_black',
    }


#: Raw result as written in a YAML report.
RawResult = dict[str, Any]


def _show(outcome: ResultOutcome, name: str, note: Optional[str]) -> str:
    components: list[str] = [
        click.style(outcome.value, fg=RESULT_OUTCOME_COLORS[outcome]),
        name
        ]

    if note:
        components.append(f'({note})')

    return ' '.join(components)


@container
class StepResult:
    """ Outcome of a single configuration step on a single host """

    name: str
    result: ResultOutcome = ResultOutcome.PASS
    note: Optional[str] = None

    def show(self) -> str:
        """ Return a nicely colored result with step name (and note) """

        return _show(self.result, self.name, self.note)

    def to_serialized(self) -> RawResult:
        serialized: RawResult = {'name': self.name, 'result': self.result.value}

        if self.note:
            serialized['note'] = self.note

        return serialized

    @classmethod
    def from_serialized(cls, serialized: RawResult) -> 'StepResult':
        return StepResult(
            name=serialized['name'],
            result=ResultOutcome.from_spec(serialized['result']),
            note=serialized.get('note'))


@container
class HostResult:
    """
    Outcome of configuration of a single host.

    ``updates`` carry option values produced by configuration steps on the
    worker's private copy of the host. They are applied to the host by the
    orchestrator once the worker is done.
    """

    name: str
    result: ResultOutcome = ResultOutcome.PASS
    steps: list[StepResult] = simple_field(default_factory=list)
    reason: Optional[str] = None
    updates: dict[str, Any] = simple_field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.result == ResultOutcome.FAIL

    @property
    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if step.result == ResultOutcome.FAIL]

    @classmethod
    def skipped(cls, name: str, reason: str) -> 'HostResult':
        """ Create a result of a host which was not configured at all """

        return HostResult(name=name, result=ResultOutcome.SKIP, reason=reason)

    def show(self) -> str:
        """ Return a nicely colored result with host name (and reason) """

        return _show(self.result, self.name, self.reason)

    def to_serialized(self) -> RawResult:
        serialized: RawResult = {
            'name': self.name,
            'result': self.result.value,
            'steps': [step.to_serialized() for step in self.steps],
            }

        if self.reason:
            serialized['reason'] = self.reason

        if self.updates:
            serialized['updates'] = dict(self.updates)

        return serialized

    @classmethod
    def from_serialized(cls, serialized: RawResult) -> 'HostResult':
        return HostResult(
            name=serialized['name'],
            result=ResultOutcome.from_spec(serialized['result']),
            steps=[StepResult.from_serialized(step) for step in serialized.get('steps', [])],
            reason=serialized.get('reason'),
            updates=dict(serialized.get('updates', {})))


def results_summary(results: list[HostResult]) -> str:
    """ Render counts of host outcomes, e.g. ``2 hosts passed, 1 host failed`` """

    stats = {
        outcome: len([result for result in results if result.result == outcome])
        for outcome in ResultOutcome
        }

    verbs = {
        ResultOutcome.PASS: 'passed',
        ResultOutcome.FAIL: 'failed',
        ResultOutcome.SKIP: 'skipped',
        }

    comments = [
        f"{count} {'host' if count == 1 else 'hosts'} {verbs[outcome]}"
        for outcome, count in stats.items()
        if count
        ]

    return ', '.join(comments) or 'no hosts'


def worst_outcome(outcomes: list[ResultOutcome]) -> ResultOutcome:
    """ Reduce step outcomes into a host outcome """

    if ResultOutcome.FAIL in outcomes:
        return ResultOutcome.FAIL

    if outcomes and all(outcome == ResultOutcome.SKIP for outcome in outcomes):
        return ResultOutcome.SKIP

    return ResultOutcome.PASS
