"""Runtime helpers for constructing operator SSH command arguments."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

from .errors import NoAuthMethodError

SSH_CONNECT_TIMEOUT = 30


class HostAuth(Enum):
    """How the host-shell backend authenticates to the hypervisor host."""

    IDENTITY = 'identity'
    PASSWORD = 'password'


class ApiAuth(Enum):
    """How the API backend authenticates to the management API."""

    TICKET = 'ticket'
    TOKEN = 'token'


@dataclass(frozen=True)
class HostLogin:
    host: str
    user: str = 'root'
    port: int = 22
    auth: HostAuth = HostAuth.IDENTITY
    password: str = ''
    identity_file: str = ''


def ssh_base_args(
    *,
    port: int = 22,
    ident: str = '',
    strict_host_key_checking: str = 'no',
    connect_timeout: int | None = SSH_CONNECT_TIMEOUT,
    batch_mode: bool = False,
) -> list[str]:
    args: list[str] = []
    if batch_mode:
        args.extend(['-o', 'BatchMode=yes'])
    if connect_timeout is not None:
        args.extend(['-o', f'ConnectTimeout={connect_timeout}'])
    args.extend(['-o', f'StrictHostKeyChecking={strict_host_key_checking}'])
    args.extend(['-p', str(port)])
    if ident:
        args.extend(['-i', ident])
    return args


def host_ssh_cmd(login: HostLogin, remote: str) -> tuple[list[str], dict | None]:
    """Build the argv (and env) that runs ``remote`` on the hypervisor host.

    Password logins go through ``sshpass -e`` so the secret travels in the
    environment instead of the process table.
    """
    target = f'{login.user}@{login.host}'
    if login.auth is HostAuth.PASSWORD:
        if not login.password:
            raise NoAuthMethodError(
                f'password authentication selected for {target} but no password given'
            )
        cmd = [
            'sshpass',
            '-e',
            'ssh',
            *ssh_base_args(port=login.port),
            target,
            remote,
        ]
        env = dict(os.environ)
        env['SSHPASS'] = login.password
        return cmd, env
    cmd = [
        'ssh',
        *ssh_base_args(
            port=login.port, ident=login.identity_file, batch_mode=True
        ),
        target,
        remote,
    ]
    return cmd, None
