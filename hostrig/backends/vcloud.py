"""
Cloud pool backends.

Hosts are created from templates, either by cloning the template directly,
or by checking a ready-made machine out of a VM pooler.
"""

from typing import Any

import requests

from hostrig.backends import Backend, BackendType, provides_backend
from hostrig.backends.vsphere import govc
from hostrig.host import Host
from hostrig.steps.hostname import generate_host_name
from hostrig.utils import GeneralError, SpecificationError, retry_session

#: Status codes worth another attempt when talking to the pooler.
POOLER_RETRY_STATUSES = (429, 500, 502, 503, 504)

#: Requests to the pooler give up after this many seconds.
POOLER_TIMEOUT = 60


@provides_backend(BackendType.VCLOUD_DIRECT)
class VcloudDirect(Backend):
    """
    Clone each host from its ``template``.

    Clones get generated names, the template is left untouched.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)

        #: Clones created so far, by host name.
        self._clones: dict[str, str] = {}

    def provision(self) -> bool:
        for host in self.hosts:
            template = self.require(host, 'template')
            clone_name = generate_host_name(f'{host.name}-')

            self._logger.verbose('clone', f'{template} as {clone_name}', 'green')

            command = govc('vm.clone', '-vm', template, '-on=true')

            folder = self.option(host, 'folder')

            if folder:
                command += ['-folder', folder]

            self.run(command + [clone_name])

            self._clones[host.name] = clone_name
            host.options['vmhostname'] = clone_name

            output = self.run(govc('vm.ip', clone_name))
            address = (output.stdout or '').strip()

            if not address:
                raise GeneralError(f"Cannot find the address of '{host.name}'.")

            host.options['ip'] = address

        return True

    def cleanup(self) -> None:
        for clone_name in reversed(list(self._clones.values())):
            self._logger.verbose('destroy', clone_name, 'green')
            self.run(govc('vm.destroy', clone_name))


@provides_backend(BackendType.VCLOUD)
class VcloudPooled(Backend):
    """
    Check hosts out of a VM pooler.

    The pooler hands out running machines created from ``template``, and
    takes them back once the run is over.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)

        #: Machines checked out so far, by host name.
        self._checked_out: dict[str, str] = {}

    @property
    def pooling_url(self) -> str:
        if not self.options.pooling_url:
            raise SpecificationError("The 'pooling-url' option is needed to use a VM pooler.")

        return self.options.pooling_url.rstrip('/')

    def _session(self) -> retry_session:
        return retry_session(
            allowed_methods=('GET', 'POST', 'DELETE'),
            status_forcelist=POOLER_RETRY_STATUSES,
            timeout=POOLER_TIMEOUT)

    def _checkout(self, session: requests.Session, host: Host) -> None:
        template = self.require(host, 'template')
        url = f'{self.pooling_url}/vm/{template}'

        self._logger.debug(f"Check out '{template}' from '{url}'.")

        try:
            response = session.post(url)
            response.raise_for_status()
            payload: dict[str, Any] = response.json()

        except (requests.RequestException, ValueError) as exc:
            raise GeneralError(f"Failed to check out '{template}' for '{host.name}'.") from exc

        if not payload.get('ok'):
            raise GeneralError(f"Pooler refused to hand out '{template}' for '{host.name}'.")

        hostname = payload.get(template, {}).get('hostname')

        if not hostname:
            raise GeneralError(f"Pooler did not name the machine for '{host.name}'.")

        self._checked_out[host.name] = hostname

        domain = payload.get('domain')

        host.options['vmhostname'] = f'{hostname}.{domain}' if domain else hostname

        self._logger.verbose('checked out', f"{host.name}: {host.options['vmhostname']}", 'green')

    def provision(self) -> bool:
        with self._session() as session:
            for host in self.hosts:
                self._checkout(session, host)

        return True

    def cleanup(self) -> None:
        with self._session() as session:
            for name, hostname in list(self._checked_out.items()):
                self._logger.verbose('return', hostname, 'green')

                try:
                    session.delete(f'{self.pooling_url}/vm/{hostname}').raise_for_status()

                except requests.RequestException as exc:
                    raise GeneralError(f"Failed to return '{hostname}' to the pooler.") from exc

                del self._checked_out[name]
