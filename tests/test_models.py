"""Tests for VM and RemoteCommand records."""

from __future__ import annotations

from datetime import timedelta

import pytest

from proxima.errors import CommandStateError
from proxima.models import (
    VM,
    CommandStatus,
    Network,
    RemoteCommand,
    VMStatus,
)


def test_new_vm_starts_stopped_with_matching_timestamps() -> None:
    vm = VM(name='web1', vmid=201)
    assert vm.status == VMStatus.STOPPED
    assert vm.updated_at == vm.created_at


@pytest.mark.parametrize(
    'method,expected',
    [
        ('start', VMStatus.RUNNING),
        ('stop', VMStatus.STOPPED),
        ('delete', VMStatus.DELETING),
    ],
)
def test_vm_transitions_advance_updated_at(method, expected) -> None:
    vm = VM(name='web1', vmid=201)
    before = vm.updated_at
    getattr(vm, method)()
    assert vm.status == expected
    assert vm.updated_at > before
    assert vm.created_at == before


def test_repeated_transitions_keep_advancing() -> None:
    vm = VM(name='web1', vmid=201)
    stamps = []
    for _ in range(5):
        vm.start()
        stamps.append(vm.updated_at)
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_vm_status_coerce_keeps_unknown_strings() -> None:
    assert VMStatus.coerce(' Running\n') is VMStatus.RUNNING
    assert VMStatus.coerce('paused') == 'paused'


def test_network_descriptor() -> None:
    assert Network(bridge='vmbr0').descriptor() == 'model=virtio,bridge=vmbr0'
    assert (
        Network(bridge='vmbr1', vlan=20, model='e1000').descriptor()
        == 'model=e1000,bridge=vmbr1,tag=20'
    )
    assert Network(bridge='vmbr0', vlan=0, model='').descriptor() == (
        'model=virtio,bridge=vmbr0'
    )


def test_remote_command_happy_path() -> None:
    cmd = RemoteCommand(vmid=300, command='uname', args=['-a'])
    assert cmd.status == CommandStatus.PENDING
    assert cmd.end_time is None
    assert cmd.full_command == 'uname -a'
    cmd.start()
    assert cmd.status == CommandStatus.RUNNING
    cmd.complete('Linux\n')
    assert cmd.status == CommandStatus.COMPLETED
    assert cmd.status.terminal
    assert cmd.output == 'Linux\n'
    assert cmd.end_time is not None
    assert cmd.end_time > cmd.start_time
    assert cmd.duration > timedelta(0)


def test_remote_command_ids_are_unique() -> None:
    a = RemoteCommand(vmid=1, command='true')
    b = RemoteCommand(vmid=1, command='true')
    assert a.id != b.id


def test_remote_command_pending_can_fail_directly() -> None:
    cmd = RemoteCommand(vmid=300, command='true')
    cmd.fail('connection refused')
    assert cmd.status == CommandStatus.FAILED
    assert cmd.error == 'connection refused'
    assert cmd.end_time is not None


def test_remote_command_timeout_records_partial_output() -> None:
    cmd = RemoteCommand(vmid=300, command='sleep', args=['100'], timeout=5)
    cmd.start()
    cmd.time_out('partial')
    assert cmd.status == CommandStatus.TIMEOUT
    assert cmd.output == 'partial'
    assert '5s' in cmd.error


def test_remote_command_terminal_states_are_frozen() -> None:
    cmd = RemoteCommand(vmid=300, command='true')
    cmd.start()
    cmd.complete('')
    with pytest.raises(CommandStateError):
        cmd.fail('late')
    with pytest.raises(CommandStateError):
        cmd.start()
    with pytest.raises(CommandStateError):
        cmd.time_out()
    assert cmd.status == CommandStatus.COMPLETED


def test_remote_command_cannot_start_twice() -> None:
    cmd = RemoteCommand(vmid=300, command='true')
    cmd.start()
    with pytest.raises(CommandStateError):
        cmd.start()
