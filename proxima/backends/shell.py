"""Hypervisor backend that drives the ``qm`` CLI over an operator SSH session."""

from __future__ import annotations

import shlex

from loguru import logger

from ..errors import (
    NotFoundError,
    ProvisioningError,
    ProximaError,
    TransportError,
)
from ..models import VM, VMStatus
from ..ports import HypervisorBackend, resolve_template_id
from ..runtime import HostAuth, HostLogin, host_ssh_cmd
from ..util import CmdError, run_cmd, which
from .guest_agent import interfaces_from_text, pick_guest_ipv4
from .qm_output import (
    apply_qm_config,
    parse_qm_config,
    parse_qm_list,
    parse_qm_status,
)

log = logger

# ssh exits 255 when it never reached the remote command.
SSH_CONNECTION_FAILED = 255


def _is_missing_vm_error(text: str) -> bool:
    low = text.lower()
    return 'does not exist' in low or 'no such vm' in low


class HostShellBackend(HypervisorBackend):
    """Run ``qm`` on the hypervisor host, one fresh ``ssh`` process per call."""

    def __init__(self, login: HostLogin):
        self.login = login

    def __repr__(self) -> str:
        return f'HostShellBackend({self.login.user}@{self.login.host})'

    def _qm(
        self,
        *args: object,
        error_cls: type[ProximaError] = TransportError,
    ) -> str:
        remote = ' '.join(['qm', *(shlex.quote(str(a)) for a in args)])
        if self.login.auth is HostAuth.PASSWORD and which('sshpass') is None:
            raise TransportError(
                'sshpass is required for password logins to the hypervisor host'
            )
        cmd, env = host_ssh_cmd(self.login, remote)
        try:
            res = run_cmd(cmd, check=True, env=env)
        except FileNotFoundError as ex:
            raise TransportError(f'cannot spawn {cmd[0]}: {ex}') from ex
        except CmdError as ex:
            detail = ex.result.combined
            if ex.result.code == SSH_CONNECTION_FAILED:
                raise TransportError(
                    f'SSH to {self.login.host}:{self.login.port} failed: {detail}'
                ) from ex
            if _is_missing_vm_error(detail):
                raise NotFoundError(f'{remote}: {detail}') from ex
            raise error_cls(
                f'{remote} failed (code={ex.result.code}): {detail}'
            ) from ex
        return res.stdout

    def create(self, vm: VM) -> None:
        template_id = resolve_template_id(self, vm.template)
        log.info(
            'Cloning template {} into VM {} ({})', template_id, vm.vmid, vm.name
        )
        self._qm(
            'clone',
            template_id,
            vm.vmid,
            '--name',
            vm.name,
            '--full',
            1,
            error_cls=ProvisioningError,
        )
        settings: list[object] = [
            'set',
            vm.vmid,
            '--cores',
            vm.cores,
            '--memory',
            vm.memory,
            '--net0',
            vm.network.descriptor(),
        ]
        if vm.tags:
            settings += ['--tags', ';'.join(vm.tags)]
        try:
            self._qm(*settings, error_cls=ProvisioningError)
        except ProximaError as ex:
            raise ProvisioningError(
                f'VM {vm.vmid} cloned but failed to update resources: {ex}'
            ) from ex
        if vm.ssh.authorized_keys:
            log.warning(
                'VM {} defines authorized keys; the host shell cannot inject them. '
                'Configure cloud-init or run `proxima copy-key` after boot.',
                vm.name,
            )

    def get_by_id(self, vmid: int) -> VM:
        vm = VM(name='', vmid=vmid)
        apply_qm_config(vm, parse_qm_config(self._qm('config', vmid)))
        try:
            vm.status = self.get_status(vmid)
        except TransportError as ex:
            log.warning('Could not read status of VM {}: {}', vmid, ex)
        return vm

    def delete(self, vmid: int) -> None:
        self._qm('destroy', vmid)

    def list(self) -> list[VM]:
        vms: list[VM] = []
        for row in parse_qm_list(self._qm('list')):
            vm = VM(name=row.name, vmid=row.vmid, status=row.status)
            try:
                apply_qm_config(vm, parse_qm_config(self._qm('config', row.vmid)))
            except ProximaError as ex:
                log.warning('Could not read config of VM {}: {}', row.vmid, ex)
            vm.name = row.name
            vms.append(vm)
        return vms

    def start(self, vmid: int) -> None:
        self._qm('start', vmid)

    def stop(self, vmid: int) -> None:
        self._qm('stop', vmid)

    def shutdown(self, vmid: int) -> None:
        self._qm('shutdown', vmid)

    def get_status(self, vmid: int) -> VMStatus | str:
        return parse_qm_status(self._qm('status', vmid))

    def resolve_guest_address(self, vmid: int) -> str:
        hint = (
            'Please ensure the QEMU guest agent is installed and running on the VM'
        )
        try:
            text = self._qm('agent', vmid, 'network-get-interfaces')
        except ProximaError as ex:
            raise TransportError(
                f'QEMU guest agent not available for VM {vmid}: {ex}. {hint}'
            ) from ex
        ip = pick_guest_ipv4(interfaces_from_text(text))
        if ip is None:
            raise NotFoundError(
                f'no valid IPv4 address reported by the guest agent of VM {vmid}. {hint}'
            )
        return ip
