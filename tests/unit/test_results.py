import pytest

from hostrig.result import (
    HostResult,
    ResultOutcome,
    StepResult,
    results_summary,
    worst_outcome,
    )
from hostrig.utils import SpecificationError, remove_color


@pytest.mark.parametrize(
    ('outcomes', 'expected'),
    [
        ([], ResultOutcome.PASS),
        ([ResultOutcome.PASS, ResultOutcome.PASS], ResultOutcome.PASS),
        ([ResultOutcome.PASS, ResultOutcome.SKIP], ResultOutcome.PASS),
        ([ResultOutcome.SKIP, ResultOutcome.SKIP], ResultOutcome.SKIP),
        ([ResultOutcome.PASS, ResultOutcome.FAIL, ResultOutcome.SKIP], ResultOutcome.FAIL),
        ],
    ids=('empty', 'all-pass', 'pass-and-skip', 'all-skip', 'any-fail'))
def test_worst_outcome(outcomes: list[ResultOutcome], expected: ResultOutcome) -> None:
    assert worst_outcome(outcomes) == expected


def test_results_summary() -> None:
    results = [
        HostResult(name='vm1'),
        HostResult(name='vm2'),
        HostResult(name='vm3', result=ResultOutcome.FAIL),
        HostResult.skipped('vm4', 'no steps enabled'),
        ]

    assert results_summary(results) == '2 hosts passed, 1 host failed, 1 host skipped'
    assert results_summary([]) == 'no hosts'


def test_failed_steps() -> None:
    result = HostResult(
        name='vm1',
        result=ResultOutcome.FAIL,
        steps=[
            StepResult(name='set_env'),
            StepResult(name='timesync', result=ResultOutcome.FAIL, note='no ntpdate'),
            StepResult(name='disable_iptables', result=ResultOutcome.SKIP),
            ])

    assert result.failed
    assert [step.name for step in result.failed_steps] == ['timesync']


def test_show() -> None:
    assert remove_color(HostResult.skipped('vm1', 'configuration disabled').show()) \
        == 'skip vm1 (configuration disabled)'
    assert remove_color(StepResult(name='timesync').show()) == 'pass timesync'


def test_serialization() -> None:
    result = HostResult(
        name='vm1',
        result=ResultOutcome.FAIL,
        steps=[
            StepResult(name='set_env'),
            StepResult(name='timesync', result=ResultOutcome.FAIL, note='no ntpdate'),
            ],
        reason='failed steps: timesync',
        updates={'environment': {}})

    serialized = result.to_serialized()

    assert serialized == {
        'name': 'vm1',
        'result': 'fail',
        'steps': [
            {'name': 'set_env', 'result': 'pass'},
            {'name': 'timesync', 'result': 'fail', 'note': 'no ntpdate'},
            ],
        'reason': 'failed steps: timesync',
        'updates': {'environment': {}},
        }

    assert HostResult.from_serialized(serialized) == result


def test_invalid_outcome() -> None:
    with pytest.raises(SpecificationError, match="Invalid result outcome 'broken'"):
        ResultOutcome.from_spec('broken')
