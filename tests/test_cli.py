"""Tests for CLI helpers, backend selection, and command wiring."""

from __future__ import annotations

from pathlib import Path

import pytest

from proxima.backends import ApiBackend, HostShellBackend
from proxima.cli import _common
from proxima.cli.main import _count_verbose, _normalize_argv, main
from proxima.cli.vm import ApplyCLI, ExecCLI, ListCLI, StatusCLI
from proxima.config import ProximaConfig
from proxima.models import VM, RemoteCommand, VMStatus
from proxima.results import ApplyResult
from proxima.runtime import ApiAuth, HostAuth

CONFIG_TOML = """
[hypervisor]
host = "10.0.0.2"
user = "root@pam"
password = "pw"
node = "pve"

[defaults]
cores = 1
memory = 512
disk_size = "8G"
template = "9000"

[[vms]]
name = "web1"
vmid = 201

[[vms]]
name = "web2"
vmid = 202
"""


def _write_cfg(tmp_path: Path) -> Path:
    path = tmp_path / 'proxima.toml'
    path.write_text(CONFIG_TOML, encoding='utf-8')
    return path


class _FakeOrchestrator:
    def __init__(self):
        self.calls = []

    def get_status(self, vmid):
        self.calls.append(('status', vmid))
        return VMStatus.RUNNING

    def list_vms(self):
        return [
            VM(name='web2', vmid=202, status=VMStatus.STOPPED),
            VM(name='web1', vmid=201, status=VMStatus.RUNNING, cores=2),
        ]

    def apply(self, vms):
        self.calls.append(('apply', [v.name for v in vms]))
        return ApplyResult(created=['web1'], failed={'web2': 'boom'})

    def execute_command_on_vm(self, vmid, command, args, timeout=0):
        self.calls.append(('exec', vmid, command, args, timeout))
        record = RemoteCommand(vmid=vmid, command=command, args=args)
        record.start()
        record.complete('hello\n')
        return record


@pytest.fixture
def fake_orch(monkeypatch):
    orch = _FakeOrchestrator()
    monkeypatch.setattr(
        'proxima.cli._common.build_orchestrator', lambda cfg, **kw: orch
    )
    return orch


def test_normalize_argv() -> None:
    assert _normalize_argv(['copy-key', '201']) == ['copy_key', '201']
    assert _normalize_argv(['--config', 'x.toml', 'copy-key', '201']) == [
        'copy_key',
        '--config',
        'x.toml',
        '201',
    ]
    assert _normalize_argv(['-v', '--host', 'pve', 'ls']) == [
        'list',
        '-v',
        '--host',
        'pve',
    ]
    assert _normalize_argv(['list', '--config', 'x.toml']) == [
        'list',
        '--config',
        'x.toml',
    ]
    assert _normalize_argv(['--help']) == ['--help']


def test_count_verbose() -> None:
    assert _count_verbose(['-vv', 'list']) == 2
    assert _count_verbose(['--verbose', '-v']) == 2
    assert _count_verbose(['list']) == 0


def test_build_hypervisor_selects_backend(monkeypatch) -> None:
    cfg = ProximaConfig()
    cfg.hypervisor.host = '10.0.0.2'
    cfg.hypervisor.node = 'pve'
    cfg.hypervisor.user = 'root@pam'
    cfg.hypervisor.password = 'pw'

    api = _common.build_hypervisor(cfg)
    assert isinstance(api, ApiBackend)
    assert api.auth is ApiAuth.TICKET

    cfg.hypervisor.api_token = 'root@pam!ci=abc'
    assert _common.build_hypervisor(cfg).auth is ApiAuth.TOKEN

    shell = _common.build_hypervisor(cfg, host='pve.example')
    assert isinstance(shell, HostShellBackend)
    assert shell.login.host == 'pve.example'
    assert shell.login.auth is HostAuth.IDENTITY

    monkeypatch.setattr('proxima.cli._common.getpass.getpass', lambda prompt: 'typed')
    shell = _common.build_hypervisor(cfg, host='pve.example', login=True)
    assert shell.login.auth is HostAuth.PASSWORD
    assert shell.login.password == 'typed'


def test_guest_settings_from_config() -> None:
    cfg = ProximaConfig()
    cfg.guest_ssh.user = 'ubuntu'
    cfg.guest_ssh.port = 2222
    settings = _common.guest_settings(cfg)
    assert settings.user == 'ubuntu'
    assert settings.port == 2222
    assert settings.copy_local_key is False


def test_list_command_prints_sorted(fake_orch, tmp_path: Path, capsys) -> None:
    path = _write_cfg(tmp_path)
    rc = ListCLI.main(argv=False, config=str(path))
    assert rc == 0
    lines = capsys.readouterr().out.splitlines()
    assert 'web1' in lines[0]
    assert 'running' in lines[0]
    assert 'web2' in lines[1]


def test_apply_command_reports_failures(fake_orch, tmp_path: Path, capsys) -> None:
    path = _write_cfg(tmp_path)
    rc = ApplyCLI.main(argv=False, config=str(path))
    assert rc == 1
    assert fake_orch.calls == [('apply', ['web1', 'web2'])]
    out = capsys.readouterr().out
    assert 'created  web1' in out
    assert 'failed   web2: boom' in out


def test_exec_command(fake_orch, tmp_path: Path, capsys) -> None:
    path = _write_cfg(tmp_path)
    rc = ExecCLI.main(
        argv=False,
        config=str(path),
        vmid=300,
        command='echo',
        arguments=['hello'],
    )
    assert rc == 0
    assert fake_orch.calls == [('exec', 300, 'echo', ['hello'], 0)]
    assert capsys.readouterr().out == 'hello\n'


def test_main_reports_errors_with_exit_code_2(tmp_path: Path, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(['list', '--config', str(tmp_path / 'missing.toml')])
    assert excinfo.value.code == 2
    assert 'ERROR: Config not found' in capsys.readouterr().err


def test_status_command_uses_orchestrator(fake_orch, tmp_path: Path, capsys) -> None:
    path = _write_cfg(tmp_path)
    rc = StatusCLI.main(argv=False, config=str(path), vmid=201)
    assert rc == 0
    assert fake_orch.calls == [('status', 201)]
    assert capsys.readouterr().out == 'running\n'
