import re
import textwrap
from typing import Optional

import jinja2

from hostrig.backends import Backend, BackendType, provides_backend
from hostrig.host import Host
from hostrig.utils import Command, GeneralError

DEFAULT_BOX = 'generic/centos9s'
DEFAULT_MEMORY = 1024
DEFAULT_CPUS = 1

#: ``HostName`` line of ``vagrant ssh-config`` output.
SSH_CONFIG_HOSTNAME_PATTERN = re.compile(r'^\s*HostName\s+(?P<address>\S+)\s*$', re.MULTILINE)
SSH_CONFIG_PORT_PATTERN = re.compile(r'^\s*Port\s+(?P<port>\d+)\s*$', re.MULTILINE)
SSH_CONFIG_USER_PATTERN = re.compile(r'^\s*User\s+(?P<user>\S+)\s*$', re.MULTILINE)

#: First ``IdentityFile`` line, the path is quoted when it contains spaces.
SSH_CONFIG_IDENTITY_FILE_PATTERN = re.compile(
    r'^\s*IdentityFile\s+"?(?P<path>[^"\n]+?)"?\s*$', re.MULTILINE)

VAGRANTFILE_TEMPLATE = jinja2.Template(
    textwrap.dedent("""
    # Generated by hostrig, changes will be lost.
    Vagrant.configure("2") do |config|
    {% for HOST in HOSTS %}
      config.vm.define "{{ HOST.name }}" do |node|
        node.vm.box = "{{ HOST.box }}"
        node.vm.hostname = "{{ HOST.name }}"
    {% if HOST.ip %}
        node.vm.network :private_network, ip: "{{ HOST.ip }}"
    {% endif %}
    {% if PROVIDER %}
        node.vm.provider :{{ PROVIDER }} do |provider|
          provider.memory = {{ HOST.memory }}
          provider.cpus = {{ HOST.cpus }}
        end
    {% endif %}
      end
    {% endfor %}
    end
    """).lstrip(),
    trim_blocks=True,
    lstrip_blocks=True)


@provides_backend(BackendType.VAGRANT)
class Vagrant(Backend):
    """
    Local virtual machines managed by Vagrant.

    A ``Vagrantfile`` describing all hosts is rendered into the working
    directory, ``vagrant up`` brings them up and ``vagrant destroy``
    takes them down again. Hosts may set ``box``, ``ip``, ``memory`` and
    ``cpus`` options.
    """

    #: Vagrant provider to use, ``None`` lets Vagrant decide.
    provider: Optional[str] = None

    @property
    def vagrantfile(self) -> str:
        return VAGRANTFILE_TEMPLATE.render(
            PROVIDER=self.provider,
            HOSTS=[
                {
                    'name': host.name,
                    'box': self.option(host, 'box', DEFAULT_BOX),
                    'ip': self.option(host, 'ip'),
                    'memory': self.option(host, 'memory', DEFAULT_MEMORY),
                    'cpus': self.option(host, 'cpus', DEFAULT_CPUS),
                    }
                for host in self.hosts
                ])

    def _vagrant(self, *args: str) -> Command:
        return Command('vagrant', *args)

    def _read_ssh_config(self, host: Host) -> None:
        output = self.run(self._vagrant('ssh-config', host.name), cwd=self.workdir)

        address = SSH_CONFIG_HOSTNAME_PATTERN.search(output.stdout or '')

        if address is None:
            raise GeneralError(f"Cannot find the address of '{host.name}' in ssh config.")

        host.options['ip'] = address.group('address')

        # Credentials set for the host win over those Vagrant made up
        for key, pattern, group, convert in (
                ('ssh_port', SSH_CONFIG_PORT_PATTERN, 'port', int),
                ('ssh_user', SSH_CONFIG_USER_PATTERN, 'user', str),
                ('ssh_key', SSH_CONFIG_IDENTITY_FILE_PATTERN, 'path', str)):
            match = pattern.search(output.stdout or '')

            if match is not None and key not in host.options:
                host.options[key] = convert(match.group(group))

        self._logger.verbose('address', f"{host.name}: {host.options['ip']}", 'green')

    def provision(self) -> bool:
        self.workdir.mkdir(parents=True, exist_ok=True)

        vagrantfile = self.workdir / 'Vagrantfile'
        vagrantfile.write_text(self.vagrantfile)

        self._logger.debug(f"Vagrantfile written to '{vagrantfile}'.")

        command = self._vagrant('up')

        if self.provider:
            command += ['--provider', self.provider]

        self.run(command, cwd=self.workdir)

        for host in self.hosts:
            self._read_ssh_config(host)

        return True

    def cleanup(self) -> None:
        if not (self.workdir / 'Vagrantfile').exists():
            self._logger.debug('No Vagrantfile found, nothing to destroy.')
            return

        self.run(self._vagrant('destroy', '--force'), cwd=self.workdir)


@provides_backend(BackendType.VAGRANT_FUSION)
class VagrantFusion(Vagrant):
    """ Vagrant machines running in VMware Fusion """

    provider = 'vmware_fusion'


@provides_backend(BackendType.VAGRANT_VIRTUALBOX)
class VagrantVirtualbox(Vagrant):
    """ Vagrant machines running in VirtualBox """

    provider = 'virtualbox'


@provides_backend(BackendType.VAGRANT_LIBVIRT)
class VagrantLibvirt(Vagrant):
    """ Vagrant machines running in libvirt """

    provider = 'libvirt'
