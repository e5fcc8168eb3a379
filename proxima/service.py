"""Lifecycle orchestration on top of a hypervisor backend and guest access."""

from __future__ import annotations

import time
from typing import Callable

from loguru import logger

from .errors import OperationTimeoutError, ProximaError, rewrap
from .models import VM, ProvisionScript, RemoteCommand, VMStatus
from .ports import GuestAccess, HypervisorBackend
from .results import ApplyResult

log = logger

POLL_INTERVAL = 1.0
STARTUP_WAIT_TICKS = 120
SHUTDOWN_WAIT_TICKS = 60


class LifecycleOrchestrator:
    """Sequence VM lifecycle operations over injected backends.

    All waiting is synchronous polling on the calling thread. Operations on
    the same VM ID must not be issued concurrently.
    """

    def __init__(
        self,
        hypervisor: HypervisorBackend,
        guest: GuestAccess,
        *,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.hypervisor = hypervisor
        self.guest = guest
        self._sleep = sleep
        self.poll_interval = poll_interval

    def create_vm(self, vm: VM) -> None:
        try:
            self.hypervisor.create(vm)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to create VM {vm.name} ({vm.vmid})') from ex
        if vm.auto_start:
            self.start_vm(vm.vmid)
            vm.start()

    def start_vm(self, vmid: int) -> None:
        try:
            self.hypervisor.start(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to start VM {vmid}') from ex

    def stop_vm(self, vmid: int) -> None:
        try:
            self.hypervisor.stop(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to stop VM {vmid}') from ex

    def get_status(self, vmid: int) -> VMStatus | str:
        try:
            return self.hypervisor.get_status(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to get VM {vmid} status') from ex

    def _poll_status(self, vmid: int) -> VMStatus | str | None:
        """Read the status once, tolerating a failed read."""
        try:
            return self.hypervisor.get_status(vmid)
        except ProximaError as ex:
            log.debug('Status read for VM {} failed, retrying: {}', vmid, ex)
            return None

    def shutdown_vm(self, vmid: int) -> None:
        status = self.get_status(vmid)

        if status == VMStatus.STOPPED:
            log.info('VM {} is already stopped', vmid)
            return

        if status == VMStatus.STARTING:
            log.info('VM {} is starting, waiting for it to come up before shutdown', vmid)
            for _ in range(STARTUP_WAIT_TICKS):
                self._sleep(self.poll_interval)
                current = self._poll_status(vmid)
                if current == VMStatus.RUNNING:
                    log.info('VM {} is now running, proceeding with shutdown', vmid)
                    break
                if current == VMStatus.STOPPED:
                    log.info('VM {} stopped during startup', vmid)
                    return
            else:
                raise OperationTimeoutError(
                    f'timeout waiting for VM {vmid} to finish starting'
                )

        try:
            self.hypervisor.shutdown(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to shutdown VM {vmid}') from ex

        log.info('Waiting for VM {} to shut down', vmid)
        for _ in range(SHUTDOWN_WAIT_TICKS):
            self._sleep(self.poll_interval)
            if self._poll_status(vmid) == VMStatus.STOPPED:
                log.info('VM {} shut down', vmid)
                return
        raise OperationTimeoutError(f'timeout waiting for VM {vmid} to shutdown')

    def delete_vm(self, vmid: int) -> None:
        try:
            self.hypervisor.stop(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to stop VM {vmid} before deletion') from ex
        try:
            self.hypervisor.delete(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to delete VM {vmid}') from ex

    def get_vm(self, vmid: int) -> VM:
        try:
            return self.hypervisor.get_by_id(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to get VM {vmid}') from ex

    def list_vms(self) -> list[VM]:
        try:
            return self.hypervisor.list()
        except ProximaError as ex:
            raise rewrap(ex, 'failed to list VMs') from ex

    def execute_script_on_vm(
        self, vmid: int, script: ProvisionScript
    ) -> RemoteCommand:
        try:
            return self.guest.execute_script(
                vmid, script.path, list(script.args), script.timeout
            )
        except ProximaError as ex:
            raise rewrap(
                ex, f'failed to execute script {script.name} on VM {vmid}'
            ) from ex

    def execute_command_on_vm(
        self, vmid: int, command: str, args: list[str], timeout: int = 0
    ) -> RemoteCommand:
        try:
            return self.guest.execute_command(vmid, command, args, timeout)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to execute command on VM {vmid}') from ex

    def copy_ssh_key(self, vmid: int) -> None:
        try:
            self.guest.copy_local_public_key(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to copy SSH key to VM {vmid}') from ex

    def provision_vm(self, vm: VM) -> list[RemoteCommand]:
        """Run the VM's provisioning scripts in order, stopping at the first failure."""
        done: list[RemoteCommand] = []
        for script in vm.scripts:
            log.info('Running script {} on VM {}', script.name, vm.vmid)
            done.append(self.execute_script_on_vm(vm.vmid, script))
        return done

    def apply(self, vms: list[VM]) -> ApplyResult:
        """Create every VM whose ID is not on the node yet.

        A failure is recorded and the batch moves on to the next VM.
        """
        result = ApplyResult()
        existing = {vm.vmid for vm in self.list_vms()}
        log.info('Found {} existing VMs', len(existing))
        for vm in vms:
            if vm.vmid in existing:
                log.info("VM '{}' (ID: {}) already exists", vm.name, vm.vmid)
                result.existing.append(vm.name)
                continue
            log.info("Creating VM '{}' (ID: {})", vm.name, vm.vmid)
            try:
                self.create_vm(vm)
            except ProximaError as ex:
                log.error("Failed to create VM '{}': {}", vm.name, ex)
                result.failed[vm.name] = str(ex)
                continue
            result.created.append(vm.name)
        return result
