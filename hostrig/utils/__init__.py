""" Common utilities and the exception hierarchy """

import contextlib
import io
import os
import re
import shlex
import signal
import subprocess
import sys
import textwrap
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any, Literal, Optional, Union, cast

import click
import requests
import requests.adapters
import urllib3
import urllib3.exceptions
import urllib3.util.retry
from ruamel.yaml import YAML, scalarstring
from ruamel.yaml.error import YAMLError

from hostrig.log import Logger

if TYPE_CHECKING:
    from types import TracebackType


# Default shell and indent size
DEFAULT_SHELL = '/bin/bash'
INDENT = 4

# Command output lines shown in exception reports
OUTPUT_LINES = 100
OUTPUT_WIDTH = 79

# HTTP retries, used by backends talking to web APIs
DEFAULT_RETRY_SESSION_RETRIES: int = 3
DEFAULT_RETRY_SESSION_BACKOFF_FACTOR: float = 0.1

#: Exit code reported for commands killed after exceeding their timeout.
TIMEOUT_EXIT_CODE = 124

_ANSI_ESCAPE_PATTERN = re.compile(r'\x1b\[[0-9;]*m')


def remove_color(text: str) -> str:
    """ Remove ansi color sequences from the string """
    return _ANSI_ESCAPE_PATTERN.sub('', text)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Exceptions
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~


class GeneralError(Exception):
    """ General error """

    def __init__(
            self,
            message: str,
            causes: Optional[list[Exception]] = None,
            *args: Any,
            **kwargs: Any) -> None:
        """
        General error.

        :param message: error message.
        :param causes: optional list of exceptions that caused this one.
            ``raise ... from ...`` allows only a single cause, while a
            provisioning or configuration run may fail for several hosts
            at once. Reporting honors this field the same way as
            ``__cause__``.
        """

        super().__init__(message, *args, **kwargs)

        self.message = message
        self.causes = causes or []


class FileError(GeneralError):
    """ File operation error """


class SpecificationError(GeneralError):
    """ Invalid inventory, options or other user-provided data """


class UnknownBackendError(SpecificationError):
    """ Backend type is not one of the known identifiers """


class ProvisionError(GeneralError):
    """ A backend failed to provision its hosts """

    def __init__(
            self,
            message: str,
            backend: Optional[str] = None,
            *args: Any,
            **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)

        self.backend = backend


class StepError(GeneralError):
    """ A configuration step failed on a host """

    def __init__(
            self,
            message: str,
            host: Optional[str] = None,
            step: Optional[str] = None,
            *args: Any,
            **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)

        self.host = host
        self.step = step


class IsolationError(GeneralError):
    """ Work could not be dispatched to an isolated worker """


class RunError(GeneralError):
    """ Command execution error """

    def __init__(
            self,
            message: str,
            command: 'Command',
            returncode: int,
            stdout: Optional[str] = None,
            stderr: Optional[str] = None,
            *args: Any,
            **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)

        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def render_run_exception_streams(
        stdout: Optional[str],
        stderr: Optional[str]) -> Iterator[str]:
    """ Render run exception output streams for printing """

    for name, output in (('stdout', stdout), ('stderr', stderr)):
        if not output:
            continue

        output_lines = output.strip().split('\n')
        line_summary = f"{min(len(output_lines), OUTPUT_LINES)}/{len(output_lines)}"
        output_lines = output_lines[-OUTPUT_LINES:]

        yield f'{name} ({line_summary} lines)'
        yield OUTPUT_WIDTH * '~'
        yield from output_lines
        yield OUTPUT_WIDTH * '~'
        yield ''


def render_exception(exception: BaseException) -> Iterator[str]:
    """ Render the exception and its causes for printing """

    def _indent(iterable: Iterable[str]) -> Iterator[str]:
        for item in iterable:
            if not item:
                yield item

            else:
                for line in item.splitlines():
                    yield f'{INDENT * " "}{line}'

    yield click.style(str(exception), fg='red')

    if isinstance(exception, RunError):
        yield ''
        yield from render_run_exception_streams(exception.stdout, exception.stderr)

    def _render_cause(number: int, cause: BaseException) -> Iterator[str]:
        yield ''
        yield f'Cause number {number}:'
        yield ''
        yield from _indent(render_exception(cause))

    def _render_causes(causes: list[BaseException]) -> Iterator[str]:
        yield ''
        yield f'The exception was caused by {len(causes)} earlier exceptions'

        for number, cause in enumerate(causes, start=1):
            yield from _render_cause(number, cause)

    causes: list[BaseException] = []

    if isinstance(exception, GeneralError) and exception.causes:
        causes += exception.causes

    if exception.__cause__:
        causes += [exception.__cause__]

    if causes:
        yield from _render_causes(causes)


def show_exception(exception: BaseException, apply_colors: bool = True) -> None:
    """ Display the exception and its causes """

    rendered = '\n'.join(render_exception(exception))

    if not apply_colors:
        rendered = remove_color(rendered)

    print('', file=sys.stderr)
    print(rendered, file=sys.stderr)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Commands
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

#: A single element of raw command line.
RawCommandElement = Union[str, int]
#: A raw command line form, a list of elements.
RawCommand = list[RawCommandElement]

#: Environment variables, as passed to commands.
Environment = dict[str, str]


class CommandOutput:
    """ Captured output of a finished command """

    def __init__(self, stdout: Optional[str], stderr: Optional[str]) -> None:
        self.stdout = stdout
        self.stderr = stderr

    def __repr__(self) -> str:
        return f'<CommandOutput: stdout={self.stdout!r} stderr={self.stderr!r}>'


class ShellScript:
    """ A shell script, a free-form blob of text understood by a shell. """

    def __init__(self, script: str) -> None:
        self._script = textwrap.dedent(script)

    def __str__(self) -> str:
        return self._script

    def __repr__(self) -> str:
        return f'<ShellScript: {self._script!r}>'

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ShellScript) and self._script == other._script

    def __hash__(self) -> int:
        return hash(self._script)

    def __add__(self, other: 'ShellScript') -> 'ShellScript':
        if not other:
            return self

        return ShellScript.from_scripts([self, other])

    def __and__(self, other: 'ShellScript') -> 'ShellScript':
        if not other:
            return self

        return ShellScript(f'{self} && {other}')

    def __or__(self, other: 'ShellScript') -> 'ShellScript':
        if not other:
            return self

        return ShellScript(f'{self} || {other}')

    def __bool__(self) -> bool:
        return bool(self._script)

    @classmethod
    def from_scripts(cls, scripts: list['ShellScript']) -> 'ShellScript':
        """
        Create a single script from many shorter ones.

        Scripts are joined together with ``;`` character.
        """

        return ShellScript('; '.join(script._script for script in scripts if bool(script)))

    def to_shell_command(self) -> 'Command':
        """ Convert a shell script into a shell-driven command """

        return Command(DEFAULT_SHELL, '-c', self._script)


class Command:
    """ A command with its arguments. """

    def __init__(self, *elements: RawCommandElement) -> None:
        self._command = [str(element) for element in elements]

    def __str__(self) -> str:
        return self.to_element()

    def __repr__(self) -> str:
        return f'<Command: {self.to_element()}>'

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Command) and self._command == other._command

    def __hash__(self) -> int:
        return hash(tuple(self._command))

    def __add__(self, other: Union['Command', RawCommand, list[str]]) -> 'Command':
        if isinstance(other, Command):
            return Command(*self._command, *other._command)

        return Command(*self._command, *other)

    def to_element(self) -> str:
        """ Convert a command to a shell command line element """

        return ' '.join(shlex.quote(s) for s in self._command)

    def to_popen(self) -> list[str]:
        """ Convert a command to form accepted by :py:mod:`subprocess.Popen` """

        return list(self._command)

    def run(
            self,
            *,
            cwd: Optional[str] = None,
            env: Optional[Environment] = None,
            timeout: Optional[int] = None,
            message: Optional[str] = None,
            friendly_command: Optional[str] = None,
            silent: bool = False,
            logger: Logger) -> CommandOutput:
        """
        Run command, give message, handle errors.

        :param cwd: if set, command would be executed in the given directory,
            otherwise the current working directory is used.
        :param env: environment variables to combine with the current
            environment before running the command.
        :param timeout: if set, command would be killed, if still running,
            after this many seconds.
        :param message: if set, it would be logged for more friendly logging.
        :param friendly_command: if set, it would be logged instead of the
            command itself.
        :param silent: if set, command output would not be logged unless the
            command fails.
        :param logger: logger to use for logging.
        :returns: command output.
        :raises RunError: when the command exits with non-zero exit code.
        """

        if message:
            logger.verbose(message, level=2)

        logger.debug(f'Run command: {self!s}', level=2)

        if not silent and friendly_command:
            logger.verbose('cmd', friendly_command, color='yellow', level=2)

        if cwd and not os.path.isdir(cwd):
            raise GeneralError(f"The working directory '{cwd}' does not exist.")

        actual_env: Optional[dict[str, str]] = None

        # Do not modify current process environment
        if env is not None:
            actual_env = {**os.environ, **env}

        try:
            process = subprocess.Popen(
                self.to_popen(),
                cwd=cwd,
                env=actual_env,
                start_new_session=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE)

        except FileNotFoundError as exc:
            raise RunError(f"File '{exc.filename}' not found.", self, 127) from exc

        try:
            raw_stdout, raw_stderr = process.communicate(timeout=timeout)

        except subprocess.TimeoutExpired:
            logger.debug(f"Command '{self!s}' exceeded {timeout} seconds, killing.", level=3)

            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            raw_stdout, raw_stderr = process.communicate()

            process.returncode = TIMEOUT_EXIT_CODE

        stdout = raw_stdout.decode('utf-8', errors='replace')
        stderr = raw_stderr.decode('utf-8', errors='replace')

        logger.debug(f"Command returned '{process.returncode}'.", level=3)

        if not silent or process.returncode != 0:
            for name, output in (('out', stdout), ('err', stderr)):
                for line in output.splitlines():
                    logger.debug(name, line, color='yellow', level=3)

        if process.returncode != 0:
            raise RunError(
                f"Command '{friendly_command or str(self)}' returned {process.returncode}.",
                self,
                process.returncode,
                stdout=stdout,
                stderr=stderr)

        return CommandOutput(stdout, stderr)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  YAML
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

YamlTypType = Literal['rt', 'safe', 'unsafe', 'base']


def dict_to_yaml(
        data: Union[dict[str, Any], list[Any]],
        width: Optional[int] = None,
        start: bool = False) -> str:
    """ Convert dictionary into yaml """
    output = io.StringIO()
    yaml = YAML()
    yaml.indent(mapping=4, sequence=4, offset=2)
    yaml.default_flow_style = False
    yaml.allow_unicode = True
    yaml.encoding = 'utf-8'
    yaml.width = cast(None, width)
    yaml.explicit_start = cast(None, start)

    # Convert multiline strings
    scalarstring.walk_tree(data)
    yaml.dump(data, output)
    return output.getvalue()


def yaml_to_dict(data: Any,
                 yaml_type: Optional[YamlTypType] = 'safe') -> dict[Any, Any]:
    """ Convert yaml into dictionary """
    yaml = YAML(typ=yaml_type)
    try:
        loaded_data = yaml.load(data)
    except YAMLError as error:
        raise SpecificationError(f"Invalid yaml syntax: {error}") from error

    if loaded_data is None:
        return {}
    if not isinstance(loaded_data, dict):
        raise SpecificationError(
            f"Expected dictionary in yaml data, "
            f"got '{type(loaded_data).__name__}'.")
    return loaded_data


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  HTTP
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~


class TimeoutHTTPAdapter(requests.adapters.HTTPAdapter):
    """ Spice up request's session with custom timeout """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.timeout = kwargs.pop('timeout', None)

        super().__init__(*args, **kwargs)

    # ignore[override]: signature does not match superclass on purpose.
    def send(  # type: ignore[override]
            self,
            request: requests.PreparedRequest,
            **kwargs: Any) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)

        return super().send(request, **kwargs)


class RetryStrategy(urllib3.util.retry.Retry):
    def increment(
            self,
            *args: Any,
            **kwargs: Any
            ) -> urllib3.util.retry.Retry:
        error = cast(Optional[Exception], kwargs.get('error', None))

        # Failed certificate verification will not get any better with
        # another attempt.
        if isinstance(error, urllib3.exceptions.SSLError) \
                and 'certificate verify failed' in str(error):
            raise GeneralError('Certificate verify failed.') from error

        return super().increment(*args, **kwargs)


class retry_session(contextlib.AbstractContextManager):  # type: ignore[type-arg]  # noqa: N801
    """ Context manager for :py:class:`requests.Session` with retries and timeout """

    @staticmethod
    def create(
            retries: int = DEFAULT_RETRY_SESSION_RETRIES,
            backoff_factor: float = DEFAULT_RETRY_SESSION_BACKOFF_FACTOR,
            allowed_methods: Optional[tuple[str, ...]] = None,
            status_forcelist: Optional[tuple[int, ...]] = None,
            timeout: Optional[int] = None
            ) -> requests.Session:
        retry_strategy = RetryStrategy(
            total=retries,
            status_forcelist=status_forcelist,
            allowed_methods=allowed_methods,
            backoff_factor=backoff_factor)

        if timeout is not None:
            http_adapter: requests.adapters.HTTPAdapter = TimeoutHTTPAdapter(
                timeout=timeout, max_retries=retry_strategy)
        else:
            http_adapter = requests.adapters.HTTPAdapter(max_retries=retry_strategy)

        session = requests.Session()
        session.mount('http://', http_adapter)
        session.mount('https://', http_adapter)

        return session

    def __init__(
            self,
            retries: int = DEFAULT_RETRY_SESSION_RETRIES,
            backoff_factor: float = DEFAULT_RETRY_SESSION_BACKOFF_FACTOR,
            allowed_methods: Optional[tuple[str, ...]] = None,
            status_forcelist: Optional[tuple[int, ...]] = None,
            timeout: Optional[int] = None
            ) -> None:
        self.retries = retries
        self.backoff_factor = backoff_factor
        self.allowed_methods = allowed_methods
        self.status_forcelist = status_forcelist
        self.timeout = timeout

    def __enter__(self) -> requests.Session:
        return self.create(
            retries=self.retries,
            backoff_factor=self.backoff_factor,
            allowed_methods=self.allowed_methods,
            status_forcelist=self.status_forcelist,
            timeout=self.timeout)

    def __exit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc_value: Optional[BaseException],
            traceback: Optional['TracebackType']) -> None:
        pass

