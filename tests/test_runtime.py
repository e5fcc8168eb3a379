"""Tests for operator SSH command construction."""

from __future__ import annotations

import pytest

from proxima.errors import NoAuthMethodError
from proxima.runtime import HostAuth, HostLogin, host_ssh_cmd, ssh_base_args


def test_ssh_base_args() -> None:
    args = ssh_base_args(port=2222, ident='/k', batch_mode=True)
    assert args == [
        '-o',
        'BatchMode=yes',
        '-o',
        'ConnectTimeout=30',
        '-o',
        'StrictHostKeyChecking=no',
        '-p',
        '2222',
        '-i',
        '/k',
    ]


def test_identity_login() -> None:
    login = HostLogin(host='pve', identity_file='/home/me/.ssh/id_ed25519')
    cmd, env = host_ssh_cmd(login, 'qm list')
    assert cmd[0] == 'ssh'
    assert 'BatchMode=yes' in cmd
    assert cmd[-2:] == ['root@pve', 'qm list']
    assert '/home/me/.ssh/id_ed25519' in cmd
    assert env is None


def test_password_login_keeps_secret_out_of_argv() -> None:
    login = HostLogin(host='pve', auth=HostAuth.PASSWORD, password='hunter2')
    cmd, env = host_ssh_cmd(login, 'qm list')
    assert cmd[:3] == ['sshpass', '-e', 'ssh']
    assert 'hunter2' not in cmd
    assert env['SSHPASS'] == 'hunter2'


def test_password_login_without_password() -> None:
    with pytest.raises(NoAuthMethodError):
        host_ssh_cmd(HostLogin(host='pve', auth=HostAuth.PASSWORD), 'qm list')
