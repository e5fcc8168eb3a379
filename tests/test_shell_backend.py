"""Tests for the qm-over-ssh hypervisor backend."""

from __future__ import annotations

import shlex

import pytest

from proxima.backends.shell import HostShellBackend
from proxima.errors import (
    NotFoundError,
    ProvisioningError,
    TransportError,
)
from proxima.models import VM, Network, VMStatus
from proxima.runtime import HostAuth, HostLogin
from proxima.util import CmdError, CmdResult


class _FakeHost:
    """Answer ``qm`` invocations from a table keyed by the remote command."""

    def __init__(self, answers=None):
        self.answers = dict(answers or {})
        self.calls = []
        self.envs = []

    def __call__(self, cmd, **kwargs):
        remote = cmd[-1]
        self.calls.append(remote)
        self.envs.append(kwargs.get('env'))
        ans = self.answers.get(remote, CmdResult(0, '', ''))
        if ans.code != 0:
            raise CmdError(cmd, ans)
        return ans


def _backend(monkeypatch, answers=None, **login_kw):
    fake = _FakeHost(answers)
    monkeypatch.setattr('proxima.backends.shell.run_cmd', fake)
    monkeypatch.setattr('proxima.backends.shell.which', lambda name: f'/usr/bin/{name}')
    login = HostLogin(host='pve.example', **login_kw)
    return HostShellBackend(login), fake


def test_create_clones_then_sets_resources(monkeypatch) -> None:
    backend, fake = _backend(monkeypatch)
    vm = VM(
        name='web1',
        vmid=201,
        cores=2,
        memory=2048,
        template='9000',
        tags=['prod', 'web'],
        network=Network(bridge='vmbr0', vlan=10),
    )
    backend.create(vm)
    assert fake.calls[0] == 'qm clone 9000 201 --name web1 --full 1'
    assert shlex.split(fake.calls[1]) == [
        'qm',
        'set',
        '201',
        '--cores',
        '2',
        '--memory',
        '2048',
        '--net0',
        'model=virtio,bridge=vmbr0,tag=10',
        '--tags',
        'prod;web',
    ]


def test_create_resolves_named_template(monkeypatch) -> None:
    listing = CmdResult(
        0, 'VMID NAME STATUS\n 9001 golden-image stopped 0 0 0\n', ''
    )
    backend, fake = _backend(monkeypatch, {'qm list': listing})
    backend.create(VM(name='db', vmid=300, template='golden-image'))
    assert fake.calls[0] == 'qm list'
    assert fake.calls[-2].startswith('qm clone 9001 300')


def test_create_reports_partial_failure(monkeypatch) -> None:
    answers = {
        'qm set 201 --cores 1 --memory 512 --net0 model=virtio,bridge=': CmdResult(
            2, '', 'unable to parse value'
        )
    }
    backend, fake = _backend(monkeypatch, answers)
    with pytest.raises(ProvisioningError, match='cloned but failed'):
        backend.create(VM(name='web1', vmid=201, cores=1, memory=512, template='9000'))
    assert fake.calls[0].startswith('qm clone')


def test_clone_failure_is_a_provisioning_error(monkeypatch) -> None:
    answers = {
        'qm clone 9000 201 --name web1 --full 1': CmdResult(
            2, '', 'VM 201 already exists'
        )
    }
    backend, fake = _backend(monkeypatch, answers)
    with pytest.raises(ProvisioningError):
        backend.create(VM(name='web1', vmid=201, template='9000'))
    assert len(fake.calls) == 1


def test_list_reads_config_and_keeps_unreadable_vms(monkeypatch) -> None:
    answers = {
        'qm list': CmdResult(
            0,
            'VMID NAME STATUS MEM(MB) BOOTDISK(GB) PID\n'
            '  201 web1 running 2048 32.00 11\n'
            '  202 web2 stopped 2048 32.00 0\n',
            '',
        ),
        'qm config 201': CmdResult(0, 'cores: 2\nmemory: 2048\nname: web1\n', ''),
        'qm config 202': CmdResult(2, '', 'permission denied'),
    }
    backend, _ = _backend(monkeypatch, answers)
    vms = backend.list()
    assert [(v.vmid, v.name, v.status) for v in vms] == [
        (201, 'web1', VMStatus.RUNNING),
        (202, 'web2', VMStatus.STOPPED),
    ]
    assert vms[0].cores == 2
    assert vms[1].cores == 0


def test_missing_vm_maps_to_not_found(monkeypatch) -> None:
    answers = {
        'qm config 999': CmdResult(2, '', "Configuration file 'nodes/pve/qemu-server/999.conf' does not exist")
    }
    backend, _ = _backend(monkeypatch, answers)
    with pytest.raises(NotFoundError):
        backend.get_by_id(999)


def test_ssh_failure_is_a_transport_error(monkeypatch) -> None:
    answers = {'qm status 201': CmdResult(255, '', 'Connection refused')}
    backend, _ = _backend(monkeypatch, answers)
    with pytest.raises(TransportError, match='pve.example'):
        backend.get_status(201)


def test_get_status_and_power_commands(monkeypatch) -> None:
    answers = {'qm status 201': CmdResult(0, 'status: running\n', '')}
    backend, fake = _backend(monkeypatch, answers)
    assert backend.get_status(201) is VMStatus.RUNNING
    backend.start(201)
    backend.stop(201)
    backend.shutdown(201)
    backend.delete(201)
    assert fake.calls[1:] == [
        'qm start 201',
        'qm stop 201',
        'qm shutdown 201',
        'qm destroy 201',
    ]


def test_password_login_uses_sshpass_env(monkeypatch) -> None:
    backend, fake = _backend(
        monkeypatch, auth=HostAuth.PASSWORD, password='s3cret'
    )
    backend.start(5)
    assert fake.envs[0]['SSHPASS'] == 's3cret'


def test_password_login_requires_sshpass(monkeypatch) -> None:
    backend, fake = _backend(
        monkeypatch, auth=HostAuth.PASSWORD, password='s3cret'
    )
    monkeypatch.setattr('proxima.backends.shell.which', lambda name: None)
    with pytest.raises(TransportError, match='sshpass'):
        backend.start(5)
    assert fake.calls == []


def test_resolve_guest_address_from_agent(monkeypatch) -> None:
    agent_json = (
        '[{"name": "lo", "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "127.0.0.1"}]},'
        ' {"name": "ens18", "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "10.0.0.44"}]}]'
    )
    answers = {'qm agent 201 network-get-interfaces': CmdResult(0, agent_json, '')}
    backend, _ = _backend(monkeypatch, answers)
    assert backend.resolve_guest_address(201) == '10.0.0.44'


def test_resolve_guest_address_without_agent_has_no_fallback(monkeypatch) -> None:
    answers = {
        'qm agent 201 network-get-interfaces': CmdResult(
            2, '', 'QEMU guest agent is not running'
        )
    }
    backend, _ = _backend(monkeypatch, answers)
    with pytest.raises(TransportError, match='guest agent'):
        backend.resolve_guest_address(201)


def test_resolve_guest_address_with_only_loopback(monkeypatch) -> None:
    agent_json = '[{"name": "lo", "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "127.0.0.1"}]}]'
    answers = {'qm agent 201 network-get-interfaces': CmdResult(0, agent_json, '')}
    backend, _ = _backend(monkeypatch, answers)
    with pytest.raises(NotFoundError):
        backend.resolve_guest_address(201)
