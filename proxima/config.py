"""TOML configuration: hypervisor connection, guest SSH, defaults, and VM specs."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import ubelt as ub

from .errors import ConfigError, NotFoundError
from .models import VM, GuestSSH, Network, ProvisionScript
from .util import expand

DEFAULT_CONFIG_NAME = 'proxima.toml'


@dataclass
class HypervisorConfig:
    transport: str = 'api'
    host: str = ''
    port: int = 8006
    user: str = ''
    password: str = ''
    node: str = ''
    api_token: str = ''
    vm_ip_base: str = ''
    ssh_port: int = 22
    identity_file: str = ''


@dataclass
class GuestSSHConfig:
    user: str = 'root'
    password: str = ''
    key_path: str = ''
    port: int = 22
    copy_local_key: bool = False
    public_key_path: str = '~/.ssh/id_rsa.pub'


@dataclass
class NetworkConfig:
    bridge: str = ''
    vlan: int = 0
    model: str = ''


@dataclass
class VMSSHConfig:
    user: str = ''
    password: str = ''
    key_path: str = ''
    authorized_keys: list[str] = field(default_factory=list)
    copy_local_key: bool = False


@dataclass
class ScriptConfig:
    name: str = ''
    path: str = ''
    args: list[str] = field(default_factory=list)
    timeout: int = 0


@dataclass
class DefaultsConfig:
    cores: int = 0
    memory: int = 0
    disk_size: str = ''
    template: str = ''
    tags: list[str] = field(default_factory=list)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    ssh: VMSSHConfig = field(default_factory=VMSSHConfig)


@dataclass
class VMConfig:
    name: str = ''
    vmid: int = 0
    cores: int = 0
    memory: int = 0
    disk_size: str = ''
    template: str = ''
    tags: list[str] = field(default_factory=list)
    auto_start: bool = False
    network: NetworkConfig = field(default_factory=NetworkConfig)
    ssh: VMSSHConfig = field(default_factory=VMSSHConfig)
    scripts: list[ScriptConfig] = field(default_factory=list)


@dataclass
class ProximaConfig:
    hypervisor: HypervisorConfig = field(default_factory=HypervisorConfig)
    guest_ssh: GuestSSHConfig = field(default_factory=GuestSSHConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    templates: dict[str, str] = field(default_factory=dict)
    vms: list[VMConfig] = field(default_factory=list)
    verbosity: int = 1


def default_config_path() -> Path:
    """Prefer ``./proxima.toml``; fall back to the per-user config directory."""
    local = Path(DEFAULT_CONFIG_NAME)
    if local.exists():
        return local.resolve()
    root = ub.Path.appdir('proxima', type='config').ensuredir()
    return Path(root) / 'config.toml'


def _fill(obj: Any, raw: dict[str, Any]) -> Any:
    names = {f.name for f in fields(obj)}
    for k, v in raw.items():
        if k not in names:
            continue
        cur = getattr(obj, k)
        if hasattr(cur, '__dataclass_fields__') and isinstance(v, dict):
            _fill(cur, v)
        else:
            setattr(obj, k, v)
    return obj


def _vm_from_dict(raw: dict[str, Any]) -> VMConfig:
    raw = dict(raw)
    if 'os_template' in raw and 'template' not in raw:
        raw['template'] = raw.pop('os_template')
    scripts = raw.pop('scripts', []) or []
    vm = _fill(VMConfig(), raw)
    vm.scripts = [
        _fill(ScriptConfig(), s) for s in scripts if isinstance(s, dict)
    ]
    return vm


def loads(text: str) -> ProximaConfig:
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as ex:
        raise ConfigError(f'failed to parse config file: {ex}') from ex
    cfg = ProximaConfig()
    for section in ('hypervisor', 'guest_ssh', 'defaults'):
        if isinstance(raw.get(section), dict):
            _fill(getattr(cfg, section), raw[section])
    if isinstance(raw.get('templates'), dict):
        cfg.templates = {str(k): str(v) for k, v in raw['templates'].items()}
    cfg.vms = [
        _vm_from_dict(item)
        for item in raw.get('vms', [])
        if isinstance(item, dict)
    ]
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def load(path: Path) -> ProximaConfig:
    try:
        text = Path(path).read_text(encoding='utf-8')
    except OSError as ex:
        raise ConfigError(f'failed to read config file {path}: {ex}') from ex
    return loads(text)


def validate(cfg: ProximaConfig) -> None:
    hv = cfg.hypervisor
    if hv.transport not in {'api', 'shell'}:
        raise ConfigError(
            f"hypervisor.transport must be 'api' or 'shell', got {hv.transport!r}"
        )
    if not hv.host:
        raise ConfigError('hypervisor host is required')
    if hv.transport == 'api':
        if not hv.node:
            raise ConfigError('hypervisor node is required')
        if not hv.api_token and not (hv.user and hv.password):
            raise ConfigError(
                'hypervisor user and password (or api_token) are required'
            )
    d = cfg.defaults
    for i, vm in enumerate(cfg.vms):
        if not vm.name:
            raise ConfigError(f'VM[{i}]: name is required')
        if vm.vmid <= 0:
            raise ConfigError(f'VM[{i}]: vmid must be positive')
        if (vm.cores or d.cores) <= 0:
            raise ConfigError(
                f'VM[{i}]: cores must be positive (checked VM and defaults)'
            )
        if (vm.memory or d.memory) <= 0:
            raise ConfigError(
                f'VM[{i}]: memory must be positive (checked VM and defaults)'
            )
        if not (vm.disk_size or d.disk_size):
            raise ConfigError(
                f'VM[{i}]: disk_size is required (checked VM and defaults)'
            )
        if not (vm.template or d.template):
            raise ConfigError(
                f'VM[{i}]: template is required (checked VM and defaults)'
            )


def to_vm(cfg: ProximaConfig, vmc: VMConfig) -> VM:
    """Build a fresh VM value, merging ``[defaults]`` and template aliases."""
    d = cfg.defaults
    template = vmc.template or d.template
    template = cfg.templates.get(template, template)
    vm = VM(name=vmc.name, vmid=vmc.vmid)
    vm.cores = vmc.cores or d.cores
    vm.memory = vmc.memory or d.memory
    vm.disk_size = vmc.disk_size or d.disk_size
    vm.network = Network(
        bridge=vmc.network.bridge or d.network.bridge,
        vlan=vmc.network.vlan or d.network.vlan,
        model=vmc.network.model or d.network.model or 'virtio',
    )
    vm.template = str(template)
    vm.tags = list(vmc.tags or d.tags)
    vm.auto_start = bool(vmc.auto_start)
    vm.ssh = GuestSSH(
        user=vmc.ssh.user or d.ssh.user,
        password=vmc.ssh.password,
        key_path=expand(vmc.ssh.key_path) if vmc.ssh.key_path else '',
        authorized_keys=list(vmc.ssh.authorized_keys),
        copy_local_key=bool(vmc.ssh.copy_local_key),
    )
    vm.scripts = [
        ProvisionScript(
            name=s.name or Path(s.path).name,
            path=s.path,
            args=[str(a) for a in s.args],
            timeout=int(s.timeout),
        )
        for s in vmc.scripts
    ]
    return vm


def vm_from_config(cfg: ProximaConfig, name: str) -> VM:
    for vmc in cfg.vms:
        if vmc.name == name:
            return to_vm(cfg, vmc)
    raise NotFoundError(f'VM config with name {name} not found')


def all_vms(cfg: ProximaConfig) -> list[VM]:
    return [to_vm(cfg, vmc) for vmc in cfg.vms]
