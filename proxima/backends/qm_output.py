"""Decoders for the line-oriented text printed by the ``qm`` CLI.

Each ``qm`` subcommand gets its own decoder so a format change on the
hypervisor shows up as one failing function.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..models import VM, VMStatus


@dataclass(frozen=True)
class ListedVM:
    vmid: int
    name: str
    status: VMStatus | str


def parse_qm_list(text: str) -> list[ListedVM]:
    """Decode ``qm list``: a header line, then ``VMID NAME STATUS ...`` rows."""
    rows: list[ListedVM] = []
    lines = text.splitlines()
    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 3:
            continue
        try:
            vmid = int(fields[0])
        except ValueError:
            continue
        rows.append(ListedVM(vmid, fields[1], VMStatus.coerce(fields[2])))
    return rows


def parse_qm_config(text: str) -> dict[str, str]:
    """Decode ``qm config <id>`` into its ``key: value`` pairs."""
    out: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or ': ' not in line:
            continue
        key, _, value = line.partition(': ')
        out[key.strip()] = value.strip()
    return out


def _leading_int(text: str) -> int:
    digits = ''
    for ch in text.strip():
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0


def apply_qm_config(vm: VM, config: dict[str, str]) -> VM:
    """Copy name/cores/memory/tags onto ``vm``; absent keys leave zero values."""
    if 'name' in config:
        vm.name = config['name']
    if 'cores' in config:
        vm.cores = _leading_int(config['cores'])
    if 'memory' in config:
        vm.memory = _leading_int(config['memory'])
    if config.get('tags'):
        vm.tags = [
            t for t in config['tags'].replace(',', ';').split(';') if t
        ]
    return vm


def parse_qm_status(text: str) -> VMStatus | str:
    """Decode ``qm status <id>`` (``status: running``)."""
    for line in text.splitlines():
        line = line.strip()
        if line.lower().startswith('status:'):
            return VMStatus.coerce(line.split(':', 1)[1])
    return VMStatus.coerce(text)
