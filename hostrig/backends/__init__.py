"""
Provisioning backends.

Each backend type is implemented by one class, registered with
:py:func:`provides_backend`. Backends are never constructed directly,
:py:func:`create` picks the right class for the given type.
"""

import enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Optional, TypeVar

import hostrig.plugins
import hostrig.queue
from hostrig.host import Host
from hostrig.log import Logger
from hostrig.options import GlobalOptions, effective
from hostrig.utils import (
    Command,
    CommandOutput,
    ProvisionError,
    SpecificationError,
    UnknownBackendError,
    )


class BackendType(str, enum.Enum):
    """ Known backend types, as written in ``hypervisor`` option """

    VSPHERE = 'vsphere'
    FUSION = 'fusion'
    VCLOUD = 'vcloud'
    VCLOUD_DIRECT = 'vcloud_direct'
    VAGRANT = 'vagrant'
    VAGRANT_FUSION = 'vagrant_fusion'
    VAGRANT_VIRTUALBOX = 'vagrant_virtualbox'
    VAGRANT_LIBVIRT = 'vagrant_libvirt'
    NONE = 'none'

    @classmethod
    def from_spec(cls, spec: str) -> 'BackendType':
        try:
            return BackendType(spec)

        except ValueError:
            raise UnknownBackendError(
                f"Unknown backend type '{spec}'."
                f" Possible choices are {', '.join(kind.value for kind in BackendType)}.")


class Backend:
    """
    A backend provisioning a group of hosts.

    Backends may record what they learn about their hosts, e.g. ``ip``,
    in host options. Hosts are never shared by two backends, therefore
    backends provisioning in parallel do not step on each other's toes.
    """

    #: Type this class was registered for.
    backend_type: ClassVar[BackendType]

    def __init__(
            self,
            hosts: list[Host],
            options: GlobalOptions,
            logger: Logger) -> None:
        self.hosts = hosts
        self.options = options
        self._logger = logger

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: hosts={[host.name for host in self.hosts]}>'

    @property
    def name(self) -> str:
        return self.backend_type.value

    @property
    def workdir(self) -> Path:
        """ A directory for files the backend needs to keep around """

        return Path(self.options.workdir) / self.name

    def inject_logger(self, logger: Logger) -> None:
        self._logger = logger

    def option(self, host: Host, key: str, default: Any = None) -> Any:
        """ Effective value of an option for one of our hosts """

        return effective(self.options, host, key, default=default, logger=self._logger)

    def require(self, host: Host, key: str) -> Any:
        """ Effective value of an option the backend cannot live without """

        value = self.option(host, key)

        if value is None or value == '':
            raise SpecificationError(
                f"Host '{host.name}' needs the '{key}' option for the '{self.name}' backend.")

        return value

    def run(self, command: Command, cwd: Optional[Path] = None) -> CommandOutput:
        """ Run a command on the machine running the orchestrator """

        return command.run(
            cwd=str(cwd) if cwd else None,
            timeout=self.options.command_timeout,
            logger=self._logger)

    def provision(self) -> bool:
        """
        Bring all hosts of the backend to life.

        Called exactly once per run.

        :returns: ``True`` when all hosts are ready.
        """

        raise NotImplementedError

    def cleanup(self) -> None:
        """ Release all hosts of the backend. Backends may have nothing to do. """


BackendClass = type[Backend]
BackendClassT = TypeVar('BackendClassT', bound=BackendClass)

_BACKEND_REGISTRY: hostrig.plugins.PluginRegistry[BackendClass] = \
    hostrig.plugins.PluginRegistry('backends')


def provides_backend(backend_type: BackendType) -> Callable[[BackendClassT], BackendClassT]:
    """
    A decorator for registering backends.

    Decorate a backend class to register it for the given backend type:

    .. code-block:: python

       @provides_backend(BackendType.FUSION)
       class Fusion(Backend):
           ...
    """

    def _provides_backend(backend_cls: BackendClassT) -> BackendClassT:
        backend_cls.backend_type = backend_type

        _BACKEND_REGISTRY.register_plugin(
            plugin_id=backend_type.value,
            plugin=backend_cls,
            logger=Logger.get_bootstrap_logger())

        return backend_cls

    return _provides_backend


def find_backend(backend_type: BackendType) -> BackendClass:
    """
    Find a backend class by its type.

    :raises UnknownBackendError: when no class is registered for the type.
    """

    backend_cls = _BACKEND_REGISTRY.get_plugin(backend_type.value)

    if backend_cls is None:
        raise UnknownBackendError(f"No backend provides the '{backend_type.value}' type.")

    return backend_cls


def create(
        backend_type: str,
        hosts: list[Host],
        options: GlobalOptions,
        logger: Logger) -> Backend:
    """
    Construct a backend for the given hosts.

    Nothing is provisioned yet.

    :param backend_type: backend type identifier, e.g. ``vagrant``. Must
        match one of :py:class:`BackendType` values exactly.
    :raises UnknownBackendError: when the type is not known.
    """

    hostrig.plugins.explore(logger)

    kind = BackendType.from_spec(backend_type)

    # Pooled cloud hosts may be cloned directly instead
    if kind == BackendType.VCLOUD and not options.pooling_api:
        kind = BackendType.VCLOUD_DIRECT

    backend_cls = find_backend(kind)

    logger.debug(
        f"Backend '{kind.value}' ({backend_cls.__name__})"
        f" for {', '.join(host.name for host in hosts)}.")

    return backend_cls(hosts, options, logger)


class ProvisionTask(hostrig.queue.MultiUnitTask[Backend, bool]):
    """ A task to provision hosts of multiple backends """

    @property
    def name(self) -> str:
        return 'provision'

    def get_label(self, unit: Backend) -> str:
        return unit.name

    def run_on_unit(self, unit: Backend, logger: Logger) -> bool:
        unit.inject_logger(logger)

        logger.info('provision', ', '.join(host.name for host in unit.hosts), color='cyan')

        if not unit.provision():
            raise ProvisionError(
                f"Backend '{unit.name}' failed to provision its hosts.",
                backend=unit.name)

        return True
