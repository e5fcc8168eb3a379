"""Decoding of guest-agent ``network-get-interfaces`` answers."""

from __future__ import annotations

import ipaddress
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

PREFERRED_INTERFACES = ('eth0', 'ens18')


@dataclass
class AgentInterface:
    name: str
    ipv4: list[str] = field(default_factory=list)


def _decode_entries(entries: Iterable[Any]) -> list[AgentInterface]:
    found: list[AgentInterface] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        iface = AgentInterface(name=str(entry.get('name', '')))
        for addr in entry.get('ip-addresses') or []:
            if not isinstance(addr, dict):
                continue
            kind = addr.get('ip-address-type', addr.get('type', ''))
            if str(kind).lower() != 'ipv4':
                continue
            ip = str(addr.get('ip-address', '')).strip()
            if ip:
                iface.ipv4.append(ip)
        found.append(iface)
    return found


def interfaces_from_payload(payload: Any) -> list[AgentInterface]:
    """Accept the agent answer as a bare list or wrapped in ``result``/``data``."""
    while isinstance(payload, dict):
        if 'result' in payload:
            payload = payload['result']
        elif 'data' in payload:
            payload = payload['data']
        else:
            return []
    if isinstance(payload, list):
        return _decode_entries(payload)
    return []


def interfaces_from_text(text: str) -> list[AgentInterface]:
    """Decode ``qm agent <id> network-get-interfaces`` output.

    The CLI prints the agent JSON; older tooling printed ``key: value`` lines,
    which are scanned for ``ip-address`` entries when the JSON parse fails.
    """
    try:
        return interfaces_from_payload(json.loads(text))
    except ValueError:
        pass
    iface = AgentInterface(name='')
    for line in text.splitlines():
        if 'ip-address:' not in line or 'ipv4' not in line:
            continue
        fields = line.split()
        for i, token in enumerate(fields):
            if token == 'ip-address:' and i + 1 < len(fields):
                iface.ipv4.append(fields[i + 1].strip(',"'))
    return [iface] if iface.ipv4 else []


def usable_ipv4(text: str) -> bool:
    try:
        ip = ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_link_local or ip.is_unspecified)


def pick_guest_ipv4(
    interfaces: Sequence[AgentInterface],
    names: Sequence[str] | None = None,
) -> str | None:
    """Return the first usable IPv4, restricted to ``names`` when given."""
    for iface in interfaces:
        if names is not None and iface.name not in names:
            continue
        if names is None and iface.name == 'lo':
            continue
        for ip in iface.ipv4:
            if usable_ipv4(ip):
                return ip
    return None
