from hostrig.backends import Backend, BackendType, provides_backend


@provides_backend(BackendType.NONE)
class Noop(Backend):
    """
    Hosts which exist already.

    Nothing is provisioned and nothing is cleaned up, the hosts are
    reached by their ``ip`` option or by their names.
    """

    def provision(self) -> bool:
        for host in self.hosts:
            self._logger.verbose('host', f'{host.name} ({host.address})', 'green')

        return True
