from pathlib import Path

from hostrig.backends import Backend, BackendType, provides_backend
from hostrig.host import Host
from hostrig.utils import Command, GeneralError

#: Where VMware Fusion keeps virtual machines by default.
DEFAULT_VM_DIRECTORY = '~/Documents/Virtual Machines.localized'


@provides_backend(BackendType.FUSION)
class Fusion(Backend):
    """
    Virtual machines of a local VMware Fusion installation.

    Each host is reverted to its ``snapshot`` and started. The machine is
    found at ``vmx`` option, or by the host name in the default Fusion
    directory.
    """

    def _vmx(self, host: Host) -> str:
        vmx = self.option(host, 'vmx')

        if vmx:
            return str(Path(vmx).expanduser())

        return str(Path(DEFAULT_VM_DIRECTORY).expanduser() / f'{host.name}.vmwarevm')

    def _vmrun(self, *args: str) -> Command:
        return Command('vmrun', '-T', 'fusion', *args)

    def provision(self) -> bool:
        for host in self.hosts:
            snapshot = self.require(host, 'snapshot')
            vmx = self._vmx(host)

            self._logger.verbose('revert', f'{host.name} to {snapshot}', 'green')
            self.run(self._vmrun('revertToSnapshot', vmx, snapshot))

            self._logger.verbose('start', host.name, 'green')
            self.run(self._vmrun('start', vmx, 'nogui'))

            output = self.run(self._vmrun('getGuestIPAddress', vmx, '-wait'))
            address = (output.stdout or '').strip()

            if not address:
                raise GeneralError(f"Cannot find the address of '{host.name}'.")

            host.options['ip'] = address

        return True

    def cleanup(self) -> None:
        for host in self.hosts:
            self._logger.verbose('stop', host.name, 'green')
            self.run(self._vmrun('stop', self._vmx(host), 'hard'))
