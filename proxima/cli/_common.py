"""Shared CLI options plus config loading and backend wiring."""

from __future__ import annotations

import getpass
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..backends import ApiBackend, HostShellBackend
from ..config import ProximaConfig, default_config_path, load, validate
from ..errors import ConfigError
from ..guest import GuestSSHExecutor, GuestSSHSettings
from ..ports import HypervisorBackend
from ..runtime import ApiAuth, HostAuth, HostLogin
from ..service import LifecycleOrchestrator

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to config TOML (default: ./proxima.toml).'
    )
    host = scfg.Value(
        '',
        help='Drive qm on this hypervisor host over SSH instead of the API.',
    )
    login = scfg.Value(
        False,
        isflag=True,
        help='With --host, prompt for a password instead of using an SSH key.',
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(p).resolve() if p else default_config_path()


def _load_cfg(config_path: str | None) -> ProximaConfig:
    path = _cfg_path(config_path)
    if not path.exists():
        raise ConfigError(f'Config not found: {path}')
    log.debug('Loading config from {}', path)
    return load(path)


def guest_settings(cfg: ProximaConfig) -> GuestSSHSettings:
    g = cfg.guest_ssh
    return GuestSSHSettings(
        user=g.user or 'root',
        password=g.password,
        key_path=g.key_path,
        port=int(g.port or 22),
        copy_local_key=bool(g.copy_local_key),
        public_key_path=g.public_key_path or '~/.ssh/id_rsa.pub',
    )


def build_hypervisor(
    cfg: ProximaConfig, *, host: str = '', login: bool = False
) -> HypervisorBackend:
    """Pick the hypervisor backend.

    ``--host`` always selects the host-shell backend. Otherwise
    ``[hypervisor].transport`` decides.
    """
    hv = cfg.hypervisor
    if host or hv.transport == 'shell':
        target = host or hv.host
        if not target:
            raise ConfigError('no hypervisor host given for the host-shell backend')
        if login:
            password = getpass.getpass(f'Password for {hv.user or "root"}@{target}: ')
            auth = HostAuth.PASSWORD
        else:
            password = ''
            auth = HostAuth.IDENTITY
        return HostShellBackend(
            HostLogin(
                host=target,
                user=hv.user or 'root',
                port=int(hv.ssh_port or 22),
                auth=auth,
                password=password,
                identity_file=hv.identity_file,
            )
        )
    if not hv.host:
        raise ConfigError('hypervisor host is required')
    if not hv.node:
        raise ConfigError('hypervisor node is required')
    return ApiBackend(
        hv.host,
        hv.node,
        port=int(hv.port or 8006),
        auth=ApiAuth.TOKEN if hv.api_token else ApiAuth.TICKET,
        user=hv.user,
        password=hv.password,
        api_token=hv.api_token,
        vm_ip_base=hv.vm_ip_base,
    )


def build_orchestrator(
    cfg: ProximaConfig, *, host: str = '', login: bool = False
) -> LifecycleOrchestrator:
    hypervisor = build_hypervisor(cfg, host=host, login=login)
    guest = GuestSSHExecutor(hypervisor, guest_settings(cfg))
    return LifecycleOrchestrator(hypervisor, guest)


def _orchestrator_for(args) -> tuple[ProximaConfig, LifecycleOrchestrator]:
    cfg = _load_cfg(args.config)
    if not args.host:
        validate(cfg)
    return cfg, build_orchestrator(cfg, host=args.host, login=bool(args.login))


__all__ = [name for name in globals() if not name.startswith('__')]
