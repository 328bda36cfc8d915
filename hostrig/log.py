"""
Logging of hostrig.

:py:class:`Logger` wraps a :py:class:`logging.Logger` and renders
key/value messages, indented by the depth of the component emitting them
and prefixed with labels of the host being worked on.

Verbosity (``-v``) and debugging (``-d``) levels are not mapped onto
:py:mod:`logging` levels. Verbose messages are emitted as ``INFO`` and
debug messages as ``DEBUG``, each carrying a :py:class:`LogRecordDetails`
with the levels of both the message and the logger. Console handlers
filter records using these details, log files get everything but the
topics nobody asked for.
"""

import dataclasses
import enum
import itertools
import logging
import os
import sys
from typing import Any, Optional, Union

import click

#: Spaces per level of indentation.
INDENT = 4


class Topic(enum.Enum):
    OPTION_RESOLUTION = 'option-resolution'
    STEP_GATING = 'step-gating'
    DISPATCH = 'dispatch'


LoggableValue = Union[str, int, bool, float, list[str]]


def _debug_level_from_envvar() -> int:
    raw_value = os.getenv('HOSTRIG_DEBUG', None)

    if raw_value is None:
        return 0

    try:
        return int(raw_value)

    except ValueError:
        import hostrig.utils

        raise hostrig.utils.GeneralError(
            f"Invalid debug level '{raw_value}', use an integer.")


def _parse_topics(topic_specs: list[str]) -> set[Topic]:
    try:
        return {Topic(spec) for spec in topic_specs}

    except ValueError as exc:
        import hostrig.utils

        invalid = next(spec for spec in topic_specs if spec not in Topic._value2member_map_)

        raise hostrig.utils.GeneralError(
            f'Logging topic "{invalid}" is invalid.'
            f" Possible choices are {', '.join(topic.value for topic in Topic)}") from exc


def decide_colorization(no_color: bool, force_color: bool) -> tuple[bool, bool]:
    """
    Decide whether the output and logging should be colorized.

    ``--force-color`` and ``HOSTRIG_FORCE_COLOR`` win over ``--no-color``,
    ``NO_COLOR`` and ``HOSTRIG_NO_COLOR``. Without any of them, output is
    colorized when standard output is a terminal, logging when standard
    error output is.

    :returns: colorization of the output and of logging.
    """

    if force_color or 'HOSTRIG_FORCE_COLOR' in os.environ:
        return True, True

    if no_color or 'NO_COLOR' in os.environ or 'HOSTRIG_NO_COLOR' in os.environ:
        return False, False

    return sys.stdout.isatty(), sys.stderr.isatty()


def render_labels(labels: list[str]) -> str:
    return ''.join(click.style(f'[{label}]', fg='cyan') for label in labels)


def indent(
        key: str,
        value: Optional[LoggableValue] = None,
        color: Optional[str] = None,
        level: int = 0,
        labels: Optional[list[str]] = None,
        labels_padding: int = 0) -> str:
    """
    Render a key/value message.

    ``{key}: {value}`` is rendered when ``value`` is set, ``key`` alone
    otherwise. Lines of a multiline value go below the key, one level
    deeper.

    :param color: color of ``key``.
    :param level: indentation, in multiples of :py:data:`INDENT`.
    :param labels: prepended to every line, each in square brackets and
        padded to ``labels_padding`` characters.
    """

    prefix = f'{render_labels(labels).ljust(labels_padding)} ' if labels else ''
    prefix += ' ' * INDENT * level

    if color is not None:
        key = click.style(key, fg=color)

    if value is None:
        return f'{prefix}{key}'

    if isinstance(value, bool):
        value = 'yes' if value else 'no'

    elif isinstance(value, list):
        value = ', '.join(str(item) for item in value)

    lines = str(value).splitlines()

    if len(lines) <= 1:
        return f'{prefix}{key}: {value}'

    return '\n'.join([f'{prefix}{key}:', *(f'{prefix}{" " * INDENT}{line}' for line in lines)])


@dataclasses.dataclass
class LogRecordDetails:
    """ Components of a message, attached to its log record """

    key: str
    value: Optional[LoggableValue] = None

    color: Optional[str] = None
    shift: int = 0

    logger_labels: list[str] = dataclasses.field(default_factory=list)
    logger_labels_padding: int = 0

    logger_verbosity_level: int = 0
    message_verbosity_level: Optional[int] = None

    logger_debug_level: int = 0
    message_debug_level: Optional[int] = None

    logger_quiet: bool = False

    logger_topics: set[Topic] = dataclasses.field(default_factory=set)
    message_topic: Optional[Topic] = None


def _details(record: logging.LogRecord) -> Optional[LogRecordDetails]:
    return getattr(record, 'details', None)


class _Formatter(logging.Formatter):
    def __init__(self, apply_colors: bool, show_timestamps: bool) -> None:
        super().__init__(
            '%(asctime)s %(message)s' if show_timestamps else '%(message)s',
            datefmt='%H:%M:%S')

        self.apply_colors = apply_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        return message if self.apply_colors else click.unstyle(message)


class VerbosityLevelFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        details = _details(record)

        if record.levelno != logging.INFO or details is None \
                or details.message_verbosity_level is None:
            return True

        return details.logger_verbosity_level >= details.message_verbosity_level


class DebugLevelFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        details = _details(record)

        if record.levelno != logging.DEBUG or details is None \
                or details.message_debug_level is None:
            return True

        return details.logger_debug_level >= details.message_debug_level


class QuietnessFilter(logging.Filter):
    """ Let only warnings and errors through a quiet logger """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno > logging.INFO:
            return True

        details = _details(record)

        return details is not None and not details.logger_quiet


class TopicFilter(logging.Filter):
    """ Drop messages of topics the logger was not asked to show """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno > logging.INFO:
            return True

        details = _details(record)

        if details is None:
            return False

        return details.message_topic is None or details.message_topic in details.logger_topics


class Logger:
    """
    A logging entry point with its verbosity, labels and indentation.

    :param actual_logger: the :py:class:`logging.Logger` to emit records
        through.
    :param base_shift: indentation added to every message.
    :param labels_padding: rendered labels are padded to this length.
    :param quiet: suppress everything but warnings, errors and
        :py:meth:`print`.
    """

    _bootstrap_logger: Optional['Logger'] = None

    def __init__(
            self,
            actual_logger: logging.Logger,
            base_shift: int = 0,
            labels: Optional[list[str]] = None,
            labels_padding: int = 0,
            verbosity_level: int = 0,
            debug_level: int = 0,
            quiet: bool = False,
            topics: Optional[set[Topic]] = None,
            apply_colors_output: bool = True,
            apply_colors_logging: bool = True) -> None:
        self._logger = actual_logger
        self._base_shift = base_shift
        self._child_id_counter = itertools.count()

        self.labels = labels or []
        self.labels_padding = labels_padding

        self.verbosity_level = verbosity_level
        self.debug_level = debug_level
        self.quiet = quiet
        self.topics = topics or set()

        self.apply_colors_output = apply_colors_output
        self.apply_colors_logging = apply_colors_logging

    @property
    def labels_span(self) -> int:
        """ Length of rendered labels """

        return len(render_labels(self.labels))

    @staticmethod
    def _normalize_logger(logger: logging.Logger) -> logging.Logger:
        logger.propagate = True
        logger.level = logging.DEBUG
        logger.handlers = []

        return logger

    def _spawn(self, actual_logger: logging.Logger, base_shift: int) -> 'Logger':
        return Logger(
            actual_logger,
            base_shift=base_shift,
            labels=self.labels[:],
            labels_padding=self.labels_padding,
            verbosity_level=self.verbosity_level,
            debug_level=self.debug_level,
            quiet=self.quiet,
            topics=self.topics,
            apply_colors_output=self.apply_colors_output,
            apply_colors_logging=self.apply_colors_logging)

    def clone(self) -> 'Logger':
        """
        Create a copy of this logger.

        Labels of the copy may be changed without affecting this logger.
        """

        return self._spawn(self._logger, self._base_shift)

    def descend(self, logger_name: Optional[str] = None, extra_shift: int = 1) -> 'Logger':
        """
        Create a logger for a child component.

        Its raw logger is a child of ours, and its messages are indented by
        ``extra_shift`` more levels.
        """

        logger_name = logger_name or f'logger{next(self._child_id_counter)}'

        return self._spawn(
            self._normalize_logger(self._logger.getChild(logger_name)),
            self._base_shift + extra_shift)

    def add_logfile_handler(self, filepath: str) -> None:
        handler = logging.FileHandler(filepath, mode='a')

        handler.setFormatter(_Formatter(apply_colors=False, show_timestamps=True))
        handler.addFilter(TopicFilter())

        self._logger.addHandler(handler)

    def add_console_handler(self, show_timestamps: bool = False) -> None:
        handler = logging.StreamHandler(stream=sys.stderr)

        handler.setFormatter(_Formatter(
            apply_colors=self.apply_colors_logging,
            show_timestamps=show_timestamps))

        for log_filter in (
                VerbosityLevelFilter(),
                DebugLevelFilter(),
                QuietnessFilter(),
                TopicFilter()):
            handler.addFilter(log_filter)

        self._logger.addHandler(handler)

    def apply_verbosity_options(
            self,
            verbose: Optional[int] = None,
            debug: Optional[int] = None,
            quiet: bool = False,
            log_topic: Optional[list[str]] = None,
            **kwargs: Any) -> 'Logger':
        """
        Update settings to match command line options.

        ``HOSTRIG_DEBUG`` environment variable, when set, takes precedence
        over ``debug``.
        """

        if verbose:
            self.verbosity_level = verbose

        self.debug_level = _debug_level_from_envvar() or debug or self.debug_level

        if quiet:
            self.quiet = True

        self.topics |= _parse_topics(list(log_topic or []))

        return self

    @classmethod
    def create(
            cls,
            actual_logger: Optional[logging.Logger] = None,
            apply_colors_output: bool = True,
            apply_colors_logging: bool = True,
            **verbosity_options: Any) -> 'Logger':
        """
        Create a root logger.

        :param actual_logger: a :py:class:`logging.Logger` to wrap, the
            ``hostrig`` logger is used by default.
        """

        actual_logger = actual_logger or cls._normalize_logger(logging.getLogger('hostrig'))

        return Logger(
            actual_logger,
            apply_colors_output=apply_colors_output,
            apply_colors_logging=apply_colors_logging) \
            .apply_verbosity_options(**verbosity_options)

    def _log(self, level: int, details: LogRecordDetails) -> None:
        details.logger_labels = self.labels
        details.logger_labels_padding = self.labels_padding
        details.logger_verbosity_level = self.verbosity_level
        details.logger_debug_level = self.debug_level
        details.logger_quiet = self.quiet
        details.logger_topics = self.topics
        details.shift += self._base_shift

        message = indent(
            details.key,
            value=details.value,
            color=details.color,
            level=details.shift,
            labels=self.labels,
            labels_padding=self.labels_padding)

        self._logger.log(level, message, extra={'details': details})

    def print(self, text: str, color: Optional[str] = None, shift: int = 0) -> None:
        """ Print to standard output, whatever the verbosity and quietness """

        message = indent(
            text,
            color=color,
            level=shift + self._base_shift,
            labels=self.labels,
            labels_padding=self.labels_padding)

        click.echo(message if self.apply_colors_output else click.unstyle(message))

    def info(
            self,
            key: str,
            value: Optional[LoggableValue] = None,
            color: Optional[str] = None,
            shift: int = 0) -> None:
        self._log(logging.INFO, LogRecordDetails(key=key, value=value, color=color, shift=shift))

    def verbose(
            self,
            key: str,
            value: Optional[LoggableValue] = None,
            color: Optional[str] = None,
            shift: int = 0,
            level: int = 1,
            topic: Optional[Topic] = None) -> None:
        self._log(logging.INFO, LogRecordDetails(
            key=key,
            value=value,
            color=color,
            shift=shift,
            message_verbosity_level=level,
            message_topic=topic))

    def debug(
            self,
            key: str,
            value: Optional[LoggableValue] = None,
            color: Optional[str] = None,
            shift: int = 0,
            level: int = 1,
            topic: Optional[Topic] = None) -> None:
        self._log(logging.DEBUG, LogRecordDetails(
            key=key,
            value=value,
            color=color,
            shift=shift,
            message_debug_level=level,
            message_topic=topic))

    def warning(self, message: str, shift: int = 0) -> None:
        self._log(
            logging.WARNING,
            LogRecordDetails(key='warn', value=message, color='yellow', shift=shift))

    def fail(self, message: str, shift: int = 0) -> None:
        self._log(
            logging.ERROR,
            LogRecordDetails(key='fail', value=message, color='red', shift=shift))

    @classmethod
    def get_bootstrap_logger(cls) -> 'Logger':
        """
        Logger for plugin registration.

        Plugins register while their modules are imported, before the
        command line is parsed. Nothing else should use this logger.
        """

        if cls._bootstrap_logger is None:
            cls._bootstrap_logger = Logger.create(
                actual_logger=cls._normalize_logger(logging.getLogger('_hostrig_bootstrap')))
            cls._bootstrap_logger.add_console_handler()

        return cls._bootstrap_logger
