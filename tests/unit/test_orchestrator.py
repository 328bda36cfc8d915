import threading
from typing import Any, Callable
from unittest.mock import patch

import pytest

from hostrig.backends import Backend
from hostrig.backends.noop import Noop
from hostrig.backends.vagrant import Vagrant, VagrantVirtualbox
from hostrig.backends.vsphere import Vsphere
from hostrig.host import Host
from hostrig.log import Logger
from hostrig.options import GlobalOptions
from hostrig.orchestrator import Orchestrator, RunState
from hostrig.queue import ExecutionContext, ParallelStrategy
from hostrig.result import ResultOutcome
from hostrig.steps import StepContext
from hostrig.steps.firewall import DisableIptables
from hostrig.steps.timesync import Timesync
from hostrig.utils import GeneralError, ProvisionError, UnknownBackendError

from ..conftest import TransportRecorder

MakeHosts = Callable[..., list[Host]]


def _orchestrator(
        hosts: list[Host],
        execution_context: ExecutionContext,
        **options: Any) -> Orchestrator:
    return Orchestrator(hosts, GlobalOptions.model_validate(options), execution_context)


def _step_runs(recorder: TransportRecorder, name: str, needle: str) -> int:
    return len([script for script in recorder.scripts_of(name) if needle in script])


#
# Backends
#
@pytest.mark.parametrize(
    ('backend_type', 'expected'),
    [('vsphere', Vsphere), ('vagrant', Vagrant), ('vagrant_virtualbox', VagrantVirtualbox)])
def test_create_constructs_single_backend(
        backend_type: str,
        expected: type[Backend],
        root_logger: Logger,
        make_hosts: MakeHosts) -> None:
    constructed: list[type[Backend]] = []
    original_init = Backend.__init__

    def _init(backend: Backend, *args: Any, **kwargs: Any) -> None:
        constructed.append(type(backend))

        original_init(backend, *args, **kwargs)

    with patch.object(Backend, '__init__', autospec=True, side_effect=_init):
        backend = Orchestrator.create(backend_type, make_hosts(2), GlobalOptions(), root_logger)

    assert type(backend) is expected
    assert constructed == [expected]


def test_partition(execution_context: ExecutionContext) -> None:
    hosts = [
        Host(name='a', options={'hypervisor': 'vagrant'}),
        Host(name='b'),
        Host(name='c', options={'hypervisor': 'vagrant'}),
        Host(name='d', options={'hypervisor': 'none'}),
        ]

    orchestrator = _orchestrator(hosts, execution_context, hypervisor='vsphere')

    partitions = orchestrator.partition()

    assert list(partitions) == ['vagrant', 'vsphere', 'none']
    assert {kind: [host.name for host in group] for kind, group in partitions.items()} == {
        'vagrant': ['a', 'c'],
        'vsphere': ['b'],
        'none': ['d'],
        }


def test_partition_without_hypervisor(execution_context: ExecutionContext) -> None:
    orchestrator = _orchestrator([Host(name='a')], execution_context)

    with pytest.raises(UnknownBackendError, match="Host 'a' has no 'hypervisor' set"):
        orchestrator.partition()


def test_unknown_backend_aborts_before_any_work(
        execution_context: ExecutionContext,
        recorder: TransportRecorder) -> None:
    hosts = [
        Host(name='a', options={'hypervisor': 'none'}),
        Host(name='b', options={'hypervisor': 'openstack'}),
        ]

    orchestrator = _orchestrator(hosts, execution_context)

    with patch.object(Noop, 'provision') as mock_provision, \
            pytest.raises(UnknownBackendError):
        orchestrator.run()

    mock_provision.assert_not_called()

    assert orchestrator.state == RunState.NOT_STARTED
    assert recorder.scripts == []


def test_provision(execution_context: ExecutionContext, make_hosts: MakeHosts) -> None:
    orchestrator = _orchestrator(make_hosts(2), execution_context, hypervisor='none')

    orchestrator.provision()

    assert orchestrator.state == RunState.PROVISIONED
    assert [type(backend) for backend in orchestrator.backends] == [Noop]

    with pytest.raises(GeneralError, match='Cannot provision hosts, the run is provisioned'):
        orchestrator.provision()


def test_sequential_provision_stops_at_first_failure(
        execution_context: ExecutionContext) -> None:
    hosts = [
        Host(name='a', options={'hypervisor': 'vagrant'}),
        Host(name='b', options={'hypervisor': 'none'}),
        ]

    orchestrator = _orchestrator(hosts, execution_context)

    with patch.object(Vagrant, 'provision', return_value=False), \
            patch.object(Noop, 'provision', return_value=True) as mock_noop, \
            pytest.raises(ProvisionError) as excinfo:
        orchestrator.provision()

    mock_noop.assert_not_called()

    assert orchestrator.state == RunState.FAILED
    assert len(excinfo.value.causes) == 1
    assert isinstance(excinfo.value.causes[0], ProvisionError)
    assert excinfo.value.causes[0].backend == 'vagrant'


def test_parallel_provision_collects_all_failures(
        execution_context: ExecutionContext) -> None:
    hosts = [
        Host(name='a', options={'hypervisor': 'vagrant'}),
        Host(name='b', options={'hypervisor': 'vsphere'}),
        Host(name='c', options={'hypervisor': 'none'}),
        ]

    orchestrator = _orchestrator(hosts, execution_context, run_in_parallel=['provision'])

    with patch.object(Vagrant, 'provision', return_value=False), \
            patch.object(Vsphere, 'provision', side_effect=GeneralError('vsphere is down')), \
            patch.object(Noop, 'provision', return_value=True) as mock_noop, \
            pytest.raises(ProvisionError, match='Failed to provision hosts of 2 backends') \
            as excinfo:
        orchestrator.provision()

    mock_noop.assert_called_once_with()

    assert sorted(str(cause) for cause in excinfo.value.causes) == [
        "Backend 'vagrant' failed to provision its hosts.",
        'vsphere is down',
        ]


def test_provision_requested_exit(execution_context: ExecutionContext) -> None:
    orchestrator = _orchestrator([Host(name='a')], execution_context, hypervisor='none')

    with patch.object(Noop, 'provision', side_effect=SystemExit(3)), \
            pytest.raises(SystemExit):
        orchestrator.provision()

    assert orchestrator.state == RunState.FAILED


#
# Configuration
#
@pytest.mark.parametrize(
    'options',
    [
        {'configure': False},
        {'configure': False, 'timesync': True, 'disable_iptables': True},
        {'configure': False, 'root_keys': True, 'add_el_extras': True, 'disable_updates': True,
         'host_name_prefix': 'ci-', 'run_in_parallel': ['configure']},
        ],
    ids=('plain', 'some-steps', 'all-steps'))
def test_configure_disabled(
        options: dict[str, Any],
        execution_context: ExecutionContext,
        recorder: TransportRecorder,
        make_hosts: MakeHosts) -> None:
    hosts = make_hosts(3, timesync=True, disable_iptables=True)
    orchestrator = _orchestrator(hosts, execution_context, **options)

    results = orchestrator.configure()

    assert recorder.scripts == []
    assert orchestrator.state == RunState.CONFIGURED
    assert [(result.name, result.result, result.reason) for result in results] == [
        (host.name, ResultOutcome.SKIP, 'configuration disabled') for host in hosts]


@pytest.mark.parametrize(
    ('host_timesync', 'expected_runs'),
    [(None, 1), (True, 1), (False, 0)],
    ids=('unset', 'enabled', 'disabled'))
def test_timesync_runs_once(
        host_timesync: Any,
        expected_runs: int,
        execution_context: ExecutionContext,
        recorder: TransportRecorder,
        make_hosts: MakeHosts) -> None:
    hosts = make_hosts(2) if host_timesync is None else make_hosts(2, timesync=host_timesync)

    synced: list[str] = []

    def _apply(context: StepContext) -> bool:
        synced.append(context.host.name)

        return True

    with patch.object(Timesync, 'apply', side_effect=_apply):
        results = _orchestrator(hosts, execution_context, timesync=True).configure()

    assert sorted(synced) == sorted([host.name for host in hosts] * expected_runs)
    assert all(result.result == ResultOutcome.PASS for result in results)


@pytest.mark.parametrize('global_timesync', [True, False])
def test_timesync_host_override_wins(
        global_timesync: bool,
        execution_context: ExecutionContext,
        recorder: TransportRecorder) -> None:
    hosts = [
        Host(name='on', platform='el-7', options={'timesync': True}),
        Host(name='off', platform='el-7', options={'timesync': False}),
        ]

    _orchestrator(hosts, execution_context, timesync=global_timesync).configure()

    assert _step_runs(recorder, 'on', 'ntpdate') == 1
    assert _step_runs(recorder, 'off', 'ntpdate') == 0


@pytest.mark.parametrize(
    ('disable_iptables', 'expected_runs'),
    [(True, 1), (False, 0)])
@pytest.mark.parametrize('parallel', [[], ['configure']], ids=('sequential', 'parallel'))
def test_disable_iptables_runs_once(
        disable_iptables: bool,
        expected_runs: int,
        parallel: list[str],
        execution_context: ExecutionContext,
        recorder: TransportRecorder,
        make_hosts: MakeHosts) -> None:
    hosts = make_hosts(3)

    with patch.object(DisableIptables, 'apply', return_value=True) as mock_apply:
        _orchestrator(
            hosts,
            execution_context,
            disable_iptables=disable_iptables,
            run_in_parallel=parallel).configure()

    invocations = [call.args[0].host.name for call in mock_apply.call_args_list]

    for host in hosts:
        assert invocations.count(host.name) == expected_runs


def test_set_env_runs_before_timesync_on_every_host(
        execution_context: ExecutionContext,
        recorder: TransportRecorder,
        make_hosts: MakeHosts) -> None:
    hosts = make_hosts(3, platform='el-5', timesync=True)
    orchestrator = _orchestrator(
        hosts,
        execution_context,
        configure=True,
        timesync=True,
        run_in_parallel=['configure'])

    with patch.object(
            ParallelStrategy,
            '_dispatch',
            autospec=True,
            side_effect=ParallelStrategy._dispatch) as mock_dispatch:
        results = orchestrator.configure()

    assert mock_dispatch.call_count == 3
    assert sorted(call.args[3].name for call in mock_dispatch.call_args_list) \
        == ['vm1', 'vm2', 'vm3']

    assert orchestrator.state == RunState.CONFIGURED
    assert [result.name for result in results] == ['vm1', 'vm2', 'vm3']

    for host, result in zip(hosts, results):
        assert result.result == ResultOutcome.PASS
        assert [step.name for step in result.steps] == ['set_env', 'timesync']

        scripts = recorder.scripts_of(host.name)

        assert 'PermitUserEnvironment' in scripts[0]
        assert 'ntpdate' in scripts[-1]

    assert threading.current_thread().name not in recorder.threads.values()


def test_single_host_is_not_dispatched(
        execution_context: ExecutionContext,
        make_hosts: MakeHosts) -> None:
    orchestrator = _orchestrator(
        make_hosts(1), execution_context, timesync=True, run_in_parallel=['configure'])

    with patch.object(ParallelStrategy, '_dispatch', autospec=True) as mock_dispatch:
        results = orchestrator.configure()

    mock_dispatch.assert_not_called()
    assert results[0].result == ResultOutcome.PASS


def test_only_eligible_hosts_are_dispatched(
        execution_context: ExecutionContext,
        make_hosts: MakeHosts) -> None:
    hosts = make_hosts(3)
    hosts[2].options['configure'] = False

    orchestrator = _orchestrator(hosts, execution_context, run_in_parallel=['configure'])

    with patch.object(
            ParallelStrategy,
            '_dispatch',
            autospec=True,
            side_effect=ParallelStrategy._dispatch) as mock_dispatch:
        results = orchestrator.configure()

    assert mock_dispatch.call_count == 2
    assert [(result.name, result.result) for result in results] == [
        ('vm1', ResultOutcome.PASS),
        ('vm2', ResultOutcome.PASS),
        ('vm3', ResultOutcome.SKIP),
        ]
    assert results[2].reason == 'no steps enabled'


@pytest.mark.parametrize('parallel', [[], ['configure']], ids=('sequential', 'parallel'))
def test_updates_are_merged(
        parallel: list[str],
        execution_context: ExecutionContext,
        make_hosts: MakeHosts) -> None:
    hosts = make_hosts(3)

    results = _orchestrator(
        hosts,
        execution_context,
        host_name_prefix='ci-',
        host_env={'FOO': 'foo'},
        run_in_parallel=parallel).configure()

    names = [host.options['assigned_hostname'] for host in hosts]

    assert all(name.startswith('ci-') for name in names)
    assert len(set(names)) == 3
    assert [result.updates['assigned_hostname'] for result in results] == names
    assert all(host.options['environment'] == {'FOO': 'foo'} for host in hosts)


@pytest.mark.parametrize('parallel', [[], ['configure']], ids=('sequential', 'parallel'))
def test_step_failure_stays_with_its_host(
        parallel: list[str],
        execution_context: ExecutionContext,
        recorder: TransportRecorder) -> None:
    hosts = [
        Host(name='good', platform='el-7'),
        Host(name='bad', platform='ubuntu-22.04'),
        Host(name='other', platform='el-7'),
        ]

    # Only hosts outside the firewall service families flush iptables
    recorder.failing.add('iptables -F')

    orchestrator = _orchestrator(
        hosts,
        execution_context,
        disable_iptables=True,
        timesync=True,
        run_in_parallel=parallel)

    results = orchestrator.configure()

    assert [(result.name, result.result) for result in results] == [
        ('good', ResultOutcome.PASS),
        ('bad', ResultOutcome.FAIL),
        ('other', ResultOutcome.PASS),
        ]
    assert results[1].reason == 'failed steps: disable_iptables'
    assert orchestrator.state == RunState.FAILED

    with pytest.raises(GeneralError, match='Cannot configure hosts, the run is failed'):
        orchestrator.configure()


def test_unexpected_exception_propagates(
        execution_context: ExecutionContext,
        make_hosts: MakeHosts) -> None:
    def _broken(context: StepContext) -> bool:
        raise KeyError('bug')

    orchestrator = _orchestrator(make_hosts(2), execution_context, timesync=True)

    with patch.object(Timesync, 'apply', side_effect=_broken), \
            pytest.raises(KeyError):
        orchestrator.configure()

    assert orchestrator.state == RunState.FAILED


def test_configure_twice(execution_context: ExecutionContext, make_hosts: MakeHosts) -> None:
    orchestrator = _orchestrator(make_hosts(1), execution_context)

    orchestrator.configure()

    assert orchestrator.state == RunState.CONFIGURED

    with pytest.raises(GeneralError, match='Cannot configure hosts, the run is configured'):
        orchestrator.configure()


def test_run(execution_context: ExecutionContext, recorder: TransportRecorder) -> None:
    hosts = [Host(name='vm1', platform='el-7'), Host(name='vm2', platform='el-7')]
    orchestrator = _orchestrator(hosts, execution_context, hypervisor='none', timesync=True)

    results = orchestrator.run()

    assert orchestrator.state == RunState.CONFIGURED
    assert [result.result for result in results] == [ResultOutcome.PASS, ResultOutcome.PASS]
    assert _step_runs(recorder, 'vm1', 'ntpdate') == 1


#
# Cleanup
#
def test_cleanup_in_reverse_order(execution_context: ExecutionContext) -> None:
    hosts = [
        Host(name='a', options={'hypervisor': 'vagrant'}),
        Host(name='b', options={'hypervisor': 'vsphere'}),
        Host(name='c', options={'hypervisor': 'none'}),
        ]

    orchestrator = _orchestrator(hosts, execution_context)

    cleaned: list[str] = []

    def _cleanup(backend: Backend) -> None:
        cleaned.append(backend.name)

        if backend.name == 'vsphere':
            raise GeneralError('cannot power off')

    with patch.object(Vagrant, 'provision', return_value=True), \
            patch.object(Vsphere, 'provision', return_value=True):
        orchestrator.provision()

    with patch.object(Backend, 'cleanup', autospec=True, side_effect=_cleanup), \
            patch.object(Vagrant, 'cleanup', autospec=True, side_effect=_cleanup), \
            patch.object(Vsphere, 'cleanup', autospec=True, side_effect=_cleanup), \
            pytest.raises(GeneralError, match='Failed to clean up 1 backends') as excinfo:
        orchestrator.cleanup()

    assert cleaned == ['none', 'vsphere', 'vagrant']
    assert [str(cause) for cause in excinfo.value.causes] == ['cannot power off']


def test_cleanup_before_provision(execution_context: ExecutionContext) -> None:
    _orchestrator([Host(name='a')], execution_context).cleanup()
