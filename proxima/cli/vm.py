"""VM lifecycle, guest command, and provisioning commands."""

from __future__ import annotations

import scriptconfig as scfg

from ..config import all_vms, vm_from_config
from ..guest import GuestSSHExecutor
from ..models import VM, ProvisionScript, RemoteCommand
from ._common import _BaseCommand, _orchestrator_for, log


def _vm_line(vm: VM) -> str:
    tags = ';'.join(vm.tags) or '-'
    return (
        f'{vm.vmid:>6}  {vm.name:<24} {str(vm.status):<10} '
        f'cores={vm.cores} memory={vm.memory}MB tags={tags}'
    )


def _print_command(record: RemoteCommand) -> None:
    if record.output:
        print(record.output, end='' if record.output.endswith('\n') else '\n')
    log.info(
        'Command {} on VM {} finished with status {} in {}',
        record.id,
        record.vmid,
        record.status,
        record.duration,
    )


class ListCLI(_BaseCommand):
    """List VMs on the hypervisor node."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        vms = orch.list_vms()
        if not vms:
            print('(no VMs)')
        for vm in sorted(vms, key=lambda v: v.vmid):
            print(_vm_line(vm))
        return 0


class _VMIDCommand(_BaseCommand):
    vmid = scfg.Value(None, type=int, position=1, help='Numeric VM ID.')


class ShowCLI(_VMIDCommand):
    """Show one VM's details."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        vm = orch.get_vm(int(args.vmid))
        print(f'ID:      {vm.vmid}')
        print(f'Name:    {vm.name}')
        print(f'Status:  {vm.status}')
        print(f'Cores:   {vm.cores}')
        print(f'Memory:  {vm.memory} MB')
        print(f'Tags:    {";".join(vm.tags) or "-"}')
        return 0


class StatusCLI(_VMIDCommand):
    """Print a VM's current status."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        print(orch.get_status(int(args.vmid)))
        return 0


class StartCLI(_VMIDCommand):
    """Start a VM."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        orch.start_vm(int(args.vmid))
        log.info('Started VM {}', args.vmid)
        return 0


class StopCLI(_VMIDCommand):
    """Hard-stop a VM."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        orch.stop_vm(int(args.vmid))
        log.info('Stopped VM {}', args.vmid)
        return 0


class ShutdownCLI(_VMIDCommand):
    """Gracefully shut a VM down and wait until it is stopped."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        orch.shutdown_vm(int(args.vmid))
        return 0


class DeleteCLI(_VMIDCommand):
    """Stop and delete a VM."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        orch.delete_vm(int(args.vmid))
        log.info('Deleted VM {}', args.vmid)
        return 0


class CreateCLI(_BaseCommand):
    """Create one VM from its ``[[vms]]`` config entry."""

    name = scfg.Value('', help='Name of the VM entry in the config.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.name:
            raise RuntimeError('--name is required')
        cfg, orch = _orchestrator_for(args)
        vm = vm_from_config(cfg, args.name)
        orch.create_vm(vm)
        log.info("Created VM '{}' (ID: {})", vm.name, vm.vmid)
        return 0


class ApplyCLI(_BaseCommand):
    """Create every configured VM that does not exist yet."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, orch = _orchestrator_for(args)
        result = orch.apply(all_vms(cfg))
        for name in result.created:
            print(f'created  {name}')
        for name in result.existing:
            print(f'exists   {name}')
        for name, err in result.failed.items():
            print(f'failed   {name}: {err}')
        print()
        for vm in sorted(orch.list_vms(), key=lambda v: v.vmid):
            print(_vm_line(vm))
        return 0 if result.ok else 1


class ExecCLI(_VMIDCommand):
    """Run one command on a VM over SSH."""

    command = scfg.Value('', position=2, help='Command to run on the guest.')
    arguments = scfg.Value([], nargs='*', position=3, help='Command arguments.')
    timeout = scfg.Value(0, type=int, help='Seconds before giving up (0: none).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.command:
            raise RuntimeError('a command is required')
        _, orch = _orchestrator_for(args)
        record = orch.execute_command_on_vm(
            int(args.vmid),
            args.command,
            [str(a) for a in (args.arguments or [])],
            int(args.timeout or 0),
        )
        _print_command(record)
        return 0


class ScriptCLI(_VMIDCommand):
    """Upload a local script to a VM and run it."""

    path = scfg.Value('', position=2, help='Local script path.')
    arguments = scfg.Value([], nargs='*', position=3, help='Script arguments.')
    timeout = scfg.Value(0, type=int, help='Seconds before giving up (0: none).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.path:
            raise RuntimeError('a script path is required')
        _, orch = _orchestrator_for(args)
        script = ProvisionScript(
            name=str(args.path),
            path=str(args.path),
            args=[str(a) for a in (args.arguments or [])],
            timeout=int(args.timeout or 0),
        )
        record = orch.execute_script_on_vm(int(args.vmid), script)
        _print_command(record)
        return 0


class ProvisionCLI(_BaseCommand):
    """Run a configured VM's provisioning scripts in order."""

    name = scfg.Value('', help='Name of the VM entry in the config.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        if not args.name:
            raise RuntimeError('--name is required')
        cfg, orch = _orchestrator_for(args)
        vm = vm_from_config(cfg, args.name)
        if isinstance(orch.guest, GuestSSHExecutor):
            orch.guest = orch.guest.for_vm(vm.ssh)
        if not vm.scripts:
            log.warning("VM '{}' has no provisioning scripts", vm.name)
        for record in orch.provision_vm(vm):
            _print_command(record)
        return 0


class CopyKeyCLI(_VMIDCommand):
    """Append the local public key to the guest's authorized_keys."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        _, orch = _orchestrator_for(args)
        orch.copy_ssh_key(int(args.vmid))
        log.info('Copied public key to VM {}', args.vmid)
        return 0
