import logging
from typing import Any

import _pytest.logging


def _record_matches(record: logging.LogRecord, **tests: Any) -> bool:
    details = getattr(record, 'details', None)

    for field_name, expected_value in tests.items():
        if field_name.startswith('details_'):
            if details is None:
                return False

            actual_value = getattr(details, field_name[len('details_'):])

        elif field_name == 'message':
            actual_value = record.getMessage()

        else:
            actual_value = getattr(record, field_name)

        if callable(expected_value):
            if not expected_value(actual_value):
                return False

        elif actual_value != expected_value:
            return False

    return True


def _report_failure(
        caplog: _pytest.logging.LogCaptureFixture,
        header: str,
        **tests: Any) -> None:
    def _show(record: logging.LogRecord) -> str:
        return f'{record.levelname:<8} {record.getMessage()!r} {getattr(record, "details", None)}'

    raise AssertionError('\n'.join([
        header,
        '',
        *(f'    {name} == {value!r}' for name, value in tests.items()),
        '',
        'Captured records:',
        *(f'    {_show(record)}' for record in caplog.records),
        ]))


def assert_log(caplog: _pytest.logging.LogCaptureFixture, **tests: Any) -> None:
    """
    Assert there is a captured log record matching all given tests.

    Keys prefixed with ``details_`` are matched against fields of the
    record's :py:class:`hostrig.log.LogRecordDetails`, ``message`` against
    the rendered message, and all other keys against attributes of the
    record. A callable value is used as a predicate.
    """

    if any(_record_matches(record, **tests) for record in caplog.records):
        return

    _report_failure(caplog, 'No captured log record matches:', **tests)


def assert_not_log(caplog: _pytest.logging.LogCaptureFixture, **tests: Any) -> None:
    """ Assert no captured log record matches all given tests """

    if not any(_record_matches(record, **tests) for record in caplog.records):
        return

    _report_failure(caplog, 'Unexpected log record matches:', **tests)
