"""
Command line interface.
"""

import dataclasses
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import click

import hostrig
import hostrig.backends
import hostrig.log
import hostrig.plugins
import hostrig.utils
from hostrig.config import load_inventory
from hostrig.log import Logger
from hostrig.options import GlobalOptions, Phase, StepFailurePolicy
from hostrig.orchestrator import Orchestrator
from hostrig.queue import ExecutionContext
from hostrig.result import HostResult, results_summary
from hostrig.steps.hostname import generate_host_name

FC = TypeVar('FC', bound=Callable[..., Any])

#: Exit code of runs in which a host failed.
FAILED_HOSTS_EXIT_CODE = 1


@dataclasses.dataclass
class ContextObject:
    """ Click context object of hostrig commands """

    logger: Logger


class CustomGroup(click.Group):
    """ Custom Click Group """

    def list_commands(self, context: click.Context) -> list[str]:
        """ Prevent alphabetical sorting """

        return list(self.commands.keys())

    def get_command(self, context: click.Context, cmd_name: str) -> Optional[click.Command]:
        """ Allow command shortening """

        found = click.Group.get_command(self, context, cmd_name)

        if found is not None:
            return found

        matches = [
            command for command in self.list_commands(context) if command.startswith(cmd_name)
            ]

        if not matches:
            return None

        if len(matches) == 1:
            return click.Group.get_command(self, context, matches[0])

        context.fail(f"Did you mean {' or '.join(sorted(matches))}?")

        return None


def create_options_decorator(options: list[Callable[[FC], FC]]) -> Callable[[FC], FC]:
    def common_decorator(fn: FC) -> FC:
        for option in reversed(options):
            fn = option(fn)

        return fn

    return common_decorator


VERBOSITY_OPTIONS: list[Callable[[Any], Any]] = [
    click.option(
        '-v', '--verbose', count=True, default=0,
        help='Show more details. Use multiple times to raise verbosity.'),
    click.option(
        '-d', '--debug', count=True, default=0,
        help='Provide debugging information. Repeat to see more details.'),
    click.option(
        '-q', '--quiet', is_flag=True,
        help='Be quiet. Exit code is just enough for me.'),
    click.option(
        '--log-topic',
        type=click.Choice([topic.value for topic in hostrig.log.Topic]),
        multiple=True,
        help='If specified, --debug and --verbose would emit logs also for these topics.'),
    ]

RUN_OPTIONS: list[Callable[[Any], Any]] = [
    click.option(
        '--parallel', 'parallel', metavar='PHASE', multiple=True,
        type=click.Choice([phase.value for phase in Phase]),
        help='Run the given phase in parallel. Can be specified multiple times.'),
    click.option(
        '--max-workers', type=click.IntRange(min=1), default=None,
        help='Limit the number of parallel workers.'),
    click.option(
        '--no-configure', is_flag=True, default=False,
        help='Do not run any configuration steps.'),
    click.option(
        '--step-failure-policy',
        type=click.Choice([policy.value for policy in StepFailurePolicy]),
        default=None,
        help='What to do with remaining steps of a host when one of them fails.'),
    click.option(
        '--report', metavar='PATH', type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help='Save results of hosts into this YAML file.'),
    ]

verbosity_options = create_options_decorator(VERBOSITY_OPTIONS)
run_options = create_options_decorator(RUN_OPTIONS)


def _apply_cli_options(
        options: GlobalOptions,
        parallel: tuple[str, ...],
        max_workers: Optional[int],
        no_configure: bool,
        step_failure_policy: Optional[str]) -> GlobalOptions:
    """ Let command line options override those of the inventory """

    changes: dict[str, Any] = {}

    if parallel:
        changes['run_in_parallel'] = options.run_in_parallel | {Phase(phase) for phase in parallel}

    if max_workers is not None:
        changes['max_workers'] = max_workers

    if no_configure:
        changes['configure'] = False

    if step_failure_policy is not None:
        changes['step_failure_policy'] = StepFailurePolicy(step_failure_policy)

    return options.updated(**changes) if changes else options


def _show_results(results: list[HostResult], logger: Logger) -> None:
    logger.print('')

    for result in results:
        logger.print(result.show())

        for step in result.failed_steps:
            logger.print(step.show(), shift=1)

    logger.print('')
    logger.print(f'summary: {results_summary(results)}')


def _save_report(path: Path, results: list[HostResult], logger: Logger) -> None:
    try:
        path.write_text(hostrig.utils.dict_to_yaml(
            [result.to_serialized() for result in results]))

    except OSError as error:
        raise hostrig.utils.FileError(f"Failed to write report '{path}'.") from error

    logger.verbose('report', str(path), color='green')


def _finish(results: list[HostResult], report: Optional[Path], logger: Logger) -> None:
    _show_results(results, logger)

    if report is not None:
        _save_report(report, results, logger)

    if any(result.failed for result in results):
        raise SystemExit(FAILED_HOSTS_EXIT_CODE)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Main
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
@click.group(invoke_without_command=True, cls=CustomGroup)
@click.pass_context
@verbosity_options
@click.option(
    '--show-time',
    is_flag=True,
    help='If set, logging messages on the terminal would contain timestamps.')
@click.option(
    '--log-file', metavar='PATH', type=click.Path(dir_okay=False), default=None,
    help='Save all logging messages into this file as well.')
@click.option(
    '--version', is_flag=True,
    help='Show hostrig version.')
@click.option(
    '--no-color', is_flag=True, default=False,
    help='Forces hostrig to not use any colors in the output or logging.')
@click.option(
    '--force-color', is_flag=True, default=False,
    help='Forces hostrig to use colors in the output and logging.')
def main(
        click_context: click.Context,
        no_color: bool,
        force_color: bool,
        show_time: bool,
        log_file: Optional[str],
        **kwargs: Any) -> None:
    """ Provision and configure hosts for testing """

    # Let Click know about the output width - this affects mostly --help output.
    click_context.max_content_width = hostrig.utils.OUTPUT_WIDTH

    if kwargs.pop('version', False):
        click.echo(f'hostrig version: {hostrig.__version__}')
        raise SystemExit(0)

    apply_colors_output, apply_colors_logging = \
        hostrig.log.decide_colorization(no_color, force_color)

    logger = Logger.create(
        apply_colors_output=apply_colors_output,
        apply_colors_logging=apply_colors_logging,
        **kwargs)
    logger.add_console_handler(show_timestamps=show_time)

    if log_file:
        logger.add_logfile_handler(log_file)

    # Propagate color setting to Click as well.
    click_context.color = apply_colors_output

    click_context.obj = ContextObject(logger=logger)

    if click_context.invoked_subcommand is None:
        click.echo(click_context.get_help())


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Run
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
@main.command(name='run')
@click.pass_context
@click.argument('inventory', type=click.Path(dir_okay=False, path_type=Path))
@run_options
@click.option(
    '--cleanup/--no-cleanup', default=False, show_default=True,
    help='Release provisioned hosts once configuration is done.')
def run(
        click_context: click.Context,
        inventory: Path,
        report: Optional[Path],
        cleanup: bool,
        **kwargs: Any) -> None:
    """
    Provision and configure hosts of an inventory.

    Hosts are provisioned by backends selected by their 'hypervisor'
    option, then configuration steps run on all of them.
    """

    logger = click_context.obj.logger

    loaded = load_inventory(inventory, logger)
    options = _apply_cli_options(loaded.options, **kwargs)

    orchestrator = Orchestrator(loaded.hosts, options, ExecutionContext(logger=logger))

    try:
        results = orchestrator.run()

    finally:
        if cleanup:
            orchestrator.cleanup()

    _finish(results, report, logger)


@main.command(name='configure')
@click.pass_context
@click.argument('inventory', type=click.Path(dir_okay=False, path_type=Path))
@run_options
def configure(
        click_context: click.Context,
        inventory: Path,
        report: Optional[Path],
        **kwargs: Any) -> None:
    """
    Configure hosts of an inventory without provisioning them.

    Hosts must be up and running already.
    """

    logger = click_context.obj.logger

    loaded = load_inventory(inventory, logger)
    options = _apply_cli_options(loaded.options, **kwargs)

    orchestrator = Orchestrator(loaded.hosts, options, ExecutionContext(logger=logger))

    _finish(orchestrator.configure(), report, logger)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Backends
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
@main.command(name='backends')
@click.pass_context
def backends(click_context: click.Context) -> None:
    """ Show available backend types """

    logger = click_context.obj.logger

    hostrig.plugins.explore(logger)

    for backend_type in hostrig.backends.BackendType:
        backend_cls = hostrig.backends._BACKEND_REGISTRY.get_plugin(backend_type.value)

        if backend_cls is None:
            logger.print(f'{backend_type.value} (not available)')
            continue

        summary = (backend_cls.__doc__ or '').strip().splitlines()

        logger.print(f'{backend_type.value:<20} {summary[0] if summary else ""}'.rstrip())


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Hostname
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
@main.command(name='hostname')
@click.pass_context
@click.argument('prefix', default='')
@click.option(
    '-n', '--count', type=click.IntRange(min=1), default=1, show_default=True,
    help='How many names to generate.')
def hostname(click_context: click.Context, prefix: str, count: int) -> None:
    """ Generate unique host names """

    for _ in range(count):
        click_context.obj.logger.print(generate_host_name(prefix))
