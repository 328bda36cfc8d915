from hostrig.backends import Backend, BackendType, provides_backend
from hostrig.host import Host
from hostrig.utils import Command, GeneralError


def govc(*args: str) -> Command:
    """ Prepare a ``govc`` command, the vSphere command line client """

    return Command('govc', *args)


@provides_backend(BackendType.VSPHERE)
class Vsphere(Backend):
    """
    Existing virtual machines of a vSphere cluster.

    Each host is reverted to its ``snapshot``, powered on, and its address
    is read from VMware tools. Connection to vSphere is configured the way
    ``govc`` expects it, via ``GOVC_*`` environment variables.
    """

    def _vm(self, host: Host) -> str:
        return str(self.option(host, 'vm_name') or host.name)

    def _wait_for_address(self, host: Host) -> None:
        output = self.run(govc('vm.ip', self._vm(host)))
        address = (output.stdout or '').strip()

        if not address:
            raise GeneralError(f"Cannot find the address of '{host.name}'.")

        host.options['ip'] = address

        self._logger.verbose('address', f'{host.name}: {address}', 'green')

    def provision(self) -> bool:
        for host in self.hosts:
            snapshot = self.require(host, 'snapshot')

            self._logger.verbose('revert', f'{host.name} to {snapshot}', 'green')
            self.run(govc('snapshot.revert', '-vm', self._vm(host), snapshot))

            self.run(govc('vm.power', '-on', self._vm(host)))

            self._wait_for_address(host)

        return True

    def cleanup(self) -> None:
        for host in self.hosts:
            self._logger.verbose('power off', host.name, 'green')
            self.run(govc('vm.power', '-off', '-force', self._vm(host)))
