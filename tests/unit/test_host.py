from unittest.mock import patch

import pytest

from hostrig.host import BASE_SSH_OPTIONS, Host, LocalTransport, SshTransport
from hostrig.log import Logger
from hostrig.options import GlobalOptions
from hostrig.utils import Command, CommandOutput, RunError, ShellScript


@pytest.mark.parametrize(
    ('options', 'expected'),
    [
        ({}, 'vm1'),
        ({'vmhostname': 'ci-abc.example.com'}, 'ci-abc.example.com'),
        ({'vmhostname': 'ci-abc.example.com', 'ip': '10.0.0.1'}, '10.0.0.1'),
        ])
def test_address(options: dict, expected: str) -> None:
    assert Host(name='vm1', options=options).address == expected


@pytest.mark.parametrize(
    ('platform', 'family', 'is_windows', 'el_version'),
    [
        ('el-7-x86_64', 'el', False, 7),
        ('el-9', 'el', False, 9),
        ('ubuntu-22.04-amd64', 'ubuntu', False, None),
        ('windows-2019-x86_64', 'windows', True, None),
        ('Win-10', 'win', True, None),
        ('', '', False, None),
        ])
def test_platform(platform: str, family: str, is_windows: bool, el_version: int) -> None:
    host = Host(name='vm1', platform=platform)

    assert host.family == family
    assert host.is_windows is is_windows
    assert host.el_version == el_version


def test_copy_is_deep() -> None:
    host = Host(name='vm1', options={'host_env': {'FOO': 'foo'}})
    copy = host.copy()

    copy.options['host_env']['FOO'] = 'bar'
    copy.options['ip'] = '10.0.0.1'

    assert host.options == {'host_env': {'FOO': 'foo'}}


def test_ssh_transport_from_options() -> None:
    host = Host(name='vm1', options={'ip': '10.0.0.1', 'ssh_user': 'admin'})
    options = GlobalOptions(ssh_key='/keys/id_rsa', ssh_options=['Compression=yes', '-4'])

    transport = SshTransport.from_options(host, options)

    assert transport.user == 'admin'
    assert transport._ssh_host == 'admin@10.0.0.1'
    assert transport._ssh_options == [
        *BASE_SSH_OPTIONS,
        '-oIdentitiesOnly=yes', '-i', '/keys/id_rsa',
        '-p', '22',
        '-oCompression=yes', '-4',
        ]


def test_ssh_transport_execute(root_logger: Logger) -> None:
    transport = SshTransport(Host(name='vm1'), port=2222)

    with patch.object(Command, 'run', autospec=True, return_value=CommandOutput('', '')) \
            as mock_run:
        transport.execute(ShellScript('hostname'), env={'FOO': 'a b'}, logger=root_logger)

    command = mock_run.call_args.args[0].to_popen()

    assert command[0] == 'ssh'
    assert command[-2:] == ['root@vm1', "export FOO='a b'; hostname"]
    assert mock_run.call_args.kwargs['friendly_command'] == 'hostname'


def test_local_transport(root_logger: Logger) -> None:
    transport = LocalTransport.from_options(Host(name='localhost'), GlobalOptions())

    output = transport.execute(
        ShellScript('echo "$GREETING"'), env={'GREETING': 'hello'}, logger=root_logger)

    assert output.stdout == 'hello\n'

    with pytest.raises(RunError) as excinfo:
        transport.execute(ShellScript('exit 3'), logger=root_logger)

    assert excinfo.value.returncode == 3
