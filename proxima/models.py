"""In-memory VM and remote command records with their status enums."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum

from .errors import CommandStateError


class VMStatus(StrEnum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    CREATING = 'creating'
    DELETING = 'deleting'
    ERROR = 'error'

    @classmethod
    def coerce(cls, raw: str) -> VMStatus | str:
        """Map a backend status string onto the enum, passing unknowns through."""
        text = (raw or '').strip()
        try:
            return cls(text.lower())
        except ValueError:
            return text


class CommandStatus(StrEnum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMEOUT = 'timeout'

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {CommandStatus.COMPLETED, CommandStatus.FAILED, CommandStatus.TIMEOUT}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _later_than(prev: datetime) -> datetime:
    # Clock resolution can hand back the same instant twice.
    now = _utcnow()
    if now <= prev:
        now = prev + timedelta(microseconds=1)
    return now


@dataclass
class Network:
    bridge: str = ''
    vlan: int = 0
    model: str = 'virtio'

    def descriptor(self) -> str:
        """Render the ``net0`` value understood by both hypervisor backends."""
        text = f'model={self.model or "virtio"},bridge={self.bridge}'
        if self.vlan and self.vlan > 0:
            text += f',tag={self.vlan}'
        return text


@dataclass
class GuestSSH:
    user: str = ''
    password: str = ''
    key_path: str = ''
    authorized_keys: list[str] = field(default_factory=list)
    copy_local_key: bool = False


@dataclass
class ProvisionScript:
    name: str
    path: str
    args: list[str] = field(default_factory=list)
    timeout: int = 0


@dataclass
class VM:
    name: str
    vmid: int
    status: VMStatus | str = VMStatus.STOPPED
    cores: int = 0
    memory: int = 0
    disk_size: str = ''
    network: Network = field(default_factory=Network)
    template: str = ''
    tags: list[str] = field(default_factory=list)
    auto_start: bool = False
    ssh: GuestSSH = field(default_factory=GuestSSH)
    scripts: list[ProvisionScript] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    def _touch(self, status: VMStatus) -> None:
        self.status = status
        self.updated_at = _later_than(self.updated_at)

    def start(self) -> None:
        self._touch(VMStatus.RUNNING)

    def stop(self) -> None:
        self._touch(VMStatus.STOPPED)

    def delete(self) -> None:
        self._touch(VMStatus.DELETING)


_command_ids = itertools.count(1)


@dataclass
class RemoteCommand:
    """One guest command execution.

    Status only moves forward: ``pending -> running -> terminal``. A command
    that never reached the guest (connection failure) may go straight from
    ``pending`` to ``failed``. Once terminal, the record is frozen and
    ``end_time`` is set.
    """

    vmid: int
    command: str
    args: list[str] = field(default_factory=list)
    timeout: int = 0
    id: int = field(default_factory=lambda: next(_command_ids))
    status: CommandStatus = CommandStatus.PENDING
    output: str = ''
    error: str = ''
    start_time: datetime = field(default_factory=_utcnow)
    end_time: datetime | None = None

    @property
    def full_command(self) -> str:
        return ' '.join([self.command, *self.args])

    @property
    def duration(self) -> timedelta:
        end = self.end_time if self.end_time is not None else _utcnow()
        return end - self.start_time

    def _require(self, *allowed: CommandStatus) -> None:
        if self.status not in allowed:
            raise CommandStateError(
                f'command {self.id} cannot leave state {self.status.value!r}'
            )

    def _finish(self, status: CommandStatus) -> None:
        self._require(CommandStatus.PENDING, CommandStatus.RUNNING)
        self.status = status
        self.end_time = _later_than(self.start_time)

    def start(self) -> None:
        self._require(CommandStatus.PENDING)
        self.status = CommandStatus.RUNNING

    def complete(self, output: str) -> None:
        self._finish(CommandStatus.COMPLETED)
        self.output = output

    def fail(self, error: str, output: str = '') -> None:
        self._finish(CommandStatus.FAILED)
        self.error = error
        self.output = output

    def time_out(self, output: str = '') -> None:
        self._finish(CommandStatus.TIMEOUT)
        self.error = f'command exceeded its {self.timeout}s timeout'
        self.output = output
