"""Capability contracts shared by the hypervisor backends and the guest executor."""

from __future__ import annotations

from abc import ABC, abstractmethod

from loguru import logger

from .errors import NotFoundError, ProvisioningError, UnsupportedError
from .models import VM, RemoteCommand, VMStatus

log = logger


class HypervisorBackend(ABC):
    """Manage VM existence and power state on a single hypervisor node.

    ``start``, ``stop`` and ``shutdown`` only dispatch the request; callers
    learn whether it took effect by polling ``get_status``.
    """

    @abstractmethod
    def create(self, vm: VM) -> None: ...

    @abstractmethod
    def get_by_id(self, vmid: int) -> VM: ...

    def get_by_name(self, name: str) -> VM:
        for vm in self.list():
            if vm.name == name:
                return vm
        raise NotFoundError(f'VM with name {name} not found')

    def update(self, vm: VM) -> None:
        raise UnsupportedError(
            f'update is not implemented for {type(self).__name__}'
        )

    @abstractmethod
    def delete(self, vmid: int) -> None: ...

    @abstractmethod
    def list(self) -> list[VM]: ...

    @abstractmethod
    def start(self, vmid: int) -> None: ...

    @abstractmethod
    def stop(self, vmid: int) -> None: ...

    @abstractmethod
    def shutdown(self, vmid: int) -> None: ...

    @abstractmethod
    def get_status(self, vmid: int) -> VMStatus | str: ...

    @abstractmethod
    def resolve_guest_address(self, vmid: int) -> str: ...


class GuestAccess(ABC):
    """Run commands inside a VM's guest OS and seed SSH trust material."""

    @abstractmethod
    def execute_command(
        self, vmid: int, command: str, args: list[str], timeout: int = 0
    ) -> RemoteCommand: ...

    @abstractmethod
    def execute_script(
        self, vmid: int, script_path: str, args: list[str], timeout: int = 0
    ) -> RemoteCommand: ...

    @abstractmethod
    def copy_local_public_key(self, vmid: int) -> None: ...

    def get_command_history(self, vmid: int) -> list[RemoteCommand]:
        raise UnsupportedError(
            f'command history is not kept by {type(self).__name__}'
        )


def resolve_template_id(backend: HypervisorBackend, ref: str | int) -> int:
    """Turn a template reference (numeric ID or VM name) into a numeric ID."""
    text = str(ref).strip()
    if not text:
        raise ProvisioningError('no template configured for clone')
    try:
        return int(text)
    except ValueError:
        pass
    log.debug('Resolving template {!r} by name', text)
    try:
        return backend.get_by_name(text).vmid
    except NotFoundError as ex:
        raise ProvisioningError(
            f"failed to resolve template '{text}': {ex}"
        ) from ex
