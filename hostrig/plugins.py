""" Handle Plugins """

import importlib
import os
import pkgutil
import sys
import threading
from collections.abc import Iterator
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Generic, Optional, TypeVar, cast

import hostrig
import hostrig.utils
from hostrig.log import Logger

ModuleT = TypeVar('ModuleT', bound=ModuleType)


# Two possibilities to load additional plugins:
# entry_points (setup_tools)
ENTRY_POINT_NAME = 'hostrig.plugin'
# Directories with module in environment variable
ENVIRONMENT_NAME = 'HOSTRIG_PLUGINS'

# Make a note when plugins have been already explored
ALREADY_EXPLORED = False

_EXPLORE_LOCK = threading.Lock()

_HOSTRIG_ROOT = Path(hostrig.__file__).resolve().parent

# Packages bundled with hostrig that contain plugins: backends and
# configuration steps. Each module in these packages registers its
# plugins when imported.
_BUNDLED_PACKAGES: list[tuple[str, Path]] = [
    ('hostrig.backends', Path('backends')),
    ('hostrig.steps', Path('steps')),
    ]


def discover(path: Path) -> Iterator[str]:
    """ Discover available plugins for given paths """
    for _, name, package in pkgutil.iter_modules([str(path)]):
        if not package:
            yield name


def _explore_package(package: str, path: Path, logger: Logger) -> None:
    """ Import plugins from a given Python package """

    logger.debug(f"Import plugins from the '{package}' package.")
    logger = logger.descend()

    for module in discover(path):
        import_module(module=f'{package}.{module}', logger=logger)


def _explore_directory(path: Path, logger: Logger) -> None:
    """ Import plugins dropped into a directory """

    logger.debug(f"Import plugins from the '{path}' directory.")
    logger = logger.descend()

    _path = str(path)

    for module in discover(path):
        if _path not in sys.path:
            sys.path.insert(0, _path)

        import_module(module=module, path=path, logger=logger)


def _explore_custom_directories(logger: Logger) -> None:
    """ Import plugins from directories listed in ``HOSTRIG_PLUGINS`` envvar """

    logger.debug('Import plugins from custom directories.')
    logger = logger.descend()

    if not os.environ.get(ENVIRONMENT_NAME):
        logger.debug(
            f"No custom directories found in the '{ENVIRONMENT_NAME}' environment variable.")
        return

    for _path in os.environ[ENVIRONMENT_NAME].split(os.pathsep):
        _explore_directory(
            Path(os.path.expandvars(os.path.expanduser(_path))).resolve(),
            logger)


def _explore_entry_point(entry_point: str, logger: Logger) -> None:
    """ Import all plugins hooked to an entry points """

    logger.debug(f"Import plugins from the '{entry_point}' entry point.")
    logger = logger.descend()

    for found in entry_points(group=entry_point):
        logger.debug(f"Loading plugin '{found.name}' ({found.value}).")
        found.load()


def explore(logger: Logger, again: bool = False) -> None:
    """
    Explore all available plugin locations

    By default plugins are explored only once to save time. Repeated
    call does not have any effect. Use ``again=True`` to force plugin
    exploration even if it has been already completed before.
    """

    global ALREADY_EXPLORED

    with _EXPLORE_LOCK:
        if ALREADY_EXPLORED and not again:
            return

        logger.debug('Import plugins from hostrig packages.')

        for name, path in _BUNDLED_PACKAGES:
            _explore_package(name, _HOSTRIG_ROOT / path, logger.descend())

        _explore_custom_directories(logger.descend())

        logger.debug('Import plugins from entry points.')

        _explore_entry_point(ENTRY_POINT_NAME, logger.descend())

        ALREADY_EXPLORED = True


# ignore[type-var,misc]: the actual type is provided by caller - the
# return value would be assigned a name, with a narrower module type.
def import_module(
        *,
        module: str,
        path: Optional[Path] = None,
        logger: Logger) -> ModuleT:  # type: ignore[type-var,misc]
    """
    Import a module.

    :param module: name of a module to import. It may represent a
        submodule as well, using common dot notation (``foo.bar.baz``).
    :param path: if specified, it would be incorporated in exception
        message.
    :returns: imported module.
    :raises hostrig.utils.GeneralError: when import fails.
    """

    if module in sys.modules:
        logger.debug(f"Module '{module}' already imported.")

        return cast(ModuleT, sys.modules[module])

    try:
        imported = cast(ModuleT, importlib.import_module(module))

    except ImportError as exc:
        raise hostrig.utils.GeneralError(
            f"Failed to import the '{module}' module from '{path or Path.cwd()}'.") from exc

    logger.debug(f"Successfully imported the '{module}' module.")

    return imported


RegisterableT = TypeVar('RegisterableT')


class PluginRegistry(Generic[RegisterableT]):
    """
    A container for plugins of shared purpose.

    A fancy wrapper for a dictionary at its core, but allows for nicer
    annotations and more visible semantics.
    """

    _plugins: dict[str, RegisterableT]

    def __init__(self, name: str) -> None:
        self.name = name
        self._plugins = {}

    def register_plugin(
            self,
            *,
            plugin_id: str,
            plugin: RegisterableT,
            raise_on_conflict: bool = True,
            logger: Logger) -> None:
        """
        Register a plugin with this registry.

        :param plugin_id: id of the plugin. Works as a label or name, and
            may not be used in this registry yet.
        :param plugin: a plugin to register.
        :param raise_on_conflict: if set, an exception would be raised when
            id was already used.
        :param logger: used for logging.
        """

        if plugin_id in self._plugins and raise_on_conflict:
            raise hostrig.utils.GeneralError(
                f"Registering plugin '{plugin}' collides"
                f" with an already registered id '{plugin_id}'"
                f" of plugin '{self._plugins[plugin_id]}' in the '{self.name}' registry.")

        self._plugins[plugin_id] = plugin

        logger.debug(f"Registered plugin '{plugin}' with id '{plugin_id}' in '{self.name}'.")

    def get_plugin(self, plugin_id: str) -> Optional[RegisterableT]:
        """
        Find a plugin by its id.

        :returns: plugin or ``None`` if no such id has been registered.
        """

        return self._plugins.get(plugin_id, None)

    def iter_plugins(self) -> Iterator[RegisterableT]:
        yield from self._plugins.values()
