"""Guest command execution over SSH straight to the VM's network address."""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

import paramiko
from loguru import logger

from .errors import (
    AuthenticationError,
    CommandFailedError,
    NoAuthMethodError,
    OperationTimeoutError,
    ProximaError,
    TransportError,
    UnsupportedError,
    rewrap,
)
from .models import GuestSSH, RemoteCommand
from .ports import GuestAccess, HypervisorBackend
from .util import expand

log = logger

CONNECT_TIMEOUT = 30
DEFAULT_KEY_NAMES = ('id_ed25519', 'id_rsa', 'id_ecdsa', 'id_dsa')
REMOTE_TMP_DIR = '/tmp'
RECV_CHUNK = 32768
POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class GuestSSHSettings:
    user: str = 'root'
    password: str = ''
    key_path: str = ''
    port: int = 22
    copy_local_key: bool = False
    public_key_path: str = '~/.ssh/id_rsa.pub'
    ssh_dir: str = '~/.ssh'

    def merged(self, vm_ssh: GuestSSH) -> GuestSSHSettings:
        """Overlay the non-empty per-VM credentials on these settings."""
        return replace(
            self,
            user=vm_ssh.user or self.user,
            password=vm_ssh.password or self.password,
            key_path=vm_ssh.key_path or self.key_path,
            copy_local_key=self.copy_local_key or vm_ssh.copy_local_key,
        )


class _SessionTimeout(Exception):
    def __init__(self, output: str):
        super().__init__(output)
        self.output = output


def load_private_key(path: str) -> paramiko.PKey:
    return paramiko.PKey.from_path(path)


def _decode(chunks: list[bytes]) -> str:
    return b''.join(chunks).decode('utf-8', errors='replace')


class GuestSSHExecutor(GuestAccess):
    """Open a fresh SSH connection to the guest for every operation.

    The guest address comes from the injected hypervisor backend. Host keys
    are accepted without verification.
    """

    def __init__(
        self,
        hypervisor: HypervisorBackend,
        settings: GuestSSHSettings | None = None,
        *,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.hypervisor = hypervisor
        self.settings = settings or GuestSSHSettings()
        self._client_factory = client_factory
        self._clock = clock
        self._sleep = sleep

    def for_vm(self, vm_ssh: GuestSSH) -> GuestSSHExecutor:
        """Return an executor using ``vm_ssh`` credentials where they are set."""
        return GuestSSHExecutor(
            self.hypervisor,
            self.settings.merged(vm_ssh),
            client_factory=self._client_factory,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _default_key(self) -> paramiko.PKey | None:
        ssh_dir = Path(expand(self.settings.ssh_dir))
        for name in DEFAULT_KEY_NAMES:
            path = ssh_dir / name
            if not path.exists():
                continue
            try:
                key = load_private_key(str(path))
            except (OSError, ValueError, paramiko.SSHException) as ex:
                log.debug('Skipping unusable SSH key {}: {}', path, ex)
                continue
            log.debug('Using default SSH key {}', path)
            return key
        return None

    def _credentials(self) -> tuple[paramiko.PKey, str]:
        """Load the private key; a password is only offered alongside it."""
        if self.settings.key_path:
            path = expand(self.settings.key_path)
            try:
                pkey = load_private_key(path)
            except (OSError, ValueError, paramiko.SSHException) as ex:
                raise NoAuthMethodError(
                    f'failed to load SSH key from {path}: {ex}'
                ) from ex
        else:
            pkey = self._default_key()
            if pkey is None:
                raise NoAuthMethodError(
                    'failed to load default SSH keys - configure key_path '
                    f'or put a default key in {self.settings.ssh_dir}'
                )
        return pkey, self.settings.password

    def _connect(self, host: str) -> paramiko.SSHClient:
        pkey, password = self._credentials()
        where = f'{self.settings.user}@{host}:{self.settings.port}'
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        log.debug('Connecting to guest {}', where)
        try:
            client.connect(
                hostname=host,
                port=self.settings.port,
                username=self.settings.user,
                pkey=pkey,
                password=password or None,
                timeout=CONNECT_TIMEOUT,
                banner_timeout=CONNECT_TIMEOUT,
                auth_timeout=CONNECT_TIMEOUT,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as ex:
            client.close()
            raise AuthenticationError(
                f'guest SSH authentication failed for {where}: {ex}'
            ) from ex
        except (paramiko.SSHException, OSError) as ex:
            client.close()
            raise TransportError(f'failed to connect to {where}: {ex}') from ex
        return client

    def _run(
        self,
        client: paramiko.SSHClient,
        line: str,
        *,
        timeout: int = 0,
        stdin: bytes | None = None,
    ) -> tuple[int, str]:
        """Run ``line`` on one channel, returning exit status and combined output."""
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise TransportError('SSH transport is not active')
        try:
            chan = transport.open_session()
        except (paramiko.SSHException, OSError) as ex:
            raise TransportError(f'failed to create SSH session: {ex}') from ex
        chunks: list[bytes] = []
        try:
            chan.set_combine_stderr(True)
            chan.exec_command(line)
            if stdin is not None:
                chan.sendall(stdin)
                chan.shutdown_write()
            deadline = self._clock() + timeout if timeout and timeout > 0 else None
            while True:
                while chan.recv_ready():
                    chunks.append(chan.recv(RECV_CHUNK))
                if chan.exit_status_ready():
                    while chan.recv_ready():
                        chunks.append(chan.recv(RECV_CHUNK))
                    break
                if deadline is not None and self._clock() >= deadline:
                    raise _SessionTimeout(_decode(chunks))
                self._sleep(POLL_INTERVAL)
            return chan.recv_exit_status(), _decode(chunks)
        except (paramiko.SSHException, OSError) as ex:
            raise TransportError(f'SSH session failed: {ex}') from ex
        finally:
            chan.close()

    def _guest_host(self, vmid: int) -> str:
        try:
            host = self.hypervisor.resolve_guest_address(vmid)
        except ProximaError as ex:
            raise rewrap(ex, f'failed to get address of VM {vmid}') from ex
        if not host:
            raise TransportError(f'empty address returned for VM {vmid}')
        return host

    def _open(self, host: str, record: RemoteCommand) -> paramiko.SSHClient:
        try:
            return self._connect(host)
        except ProximaError as ex:
            record.fail(str(ex))
            ex.command = record
            raise

    def _execute(
        self, client: paramiko.SSHClient, record: RemoteCommand, line: str
    ) -> None:
        try:
            code, output = self._run(client, line, timeout=record.timeout)
        except _SessionTimeout as ex:
            record.time_out(ex.output)
            raise OperationTimeoutError(
                f"command '{line}' on VM {record.vmid} exceeded its "
                f'{record.timeout}s timeout',
                command=record,
            ) from None
        except ProximaError as ex:
            record.fail(str(ex))
            ex.command = record
            raise
        if code != 0:
            record.fail(f'{output} - exit status {code}', output=output)
            raise CommandFailedError(
                f"command '{line}' failed on VM {record.vmid} "
                f'(exit status {code}): {output}',
                command=record,
            )
        record.complete(output)

    def execute_command(
        self, vmid: int, command: str, args: list[str], timeout: int = 0
    ) -> RemoteCommand:
        host = self._guest_host(vmid)
        record = RemoteCommand(
            vmid=vmid, command=command, args=list(args), timeout=timeout
        )
        client = self._open(host, record)
        try:
            record.start()
            # Arguments are joined verbatim; quoting is the caller's job.
            self._execute(client, record, record.full_command)
        finally:
            client.close()
        return record

    def _upload(
        self, client: paramiko.SSHClient, remote_path: str, content: bytes
    ) -> None:
        code, output = self._run(
            client, f'cat > {shlex.quote(remote_path)}', stdin=content
        )
        if code != 0:
            raise CommandFailedError(
                f'failed to copy script to {remote_path} (exit status {code}): {output}'
            )

    def _cleanup(self, client: paramiko.SSHClient, remote_path: str) -> None:
        try:
            code, output = self._run(client, f'rm -f {shlex.quote(remote_path)}')
        except ProximaError as ex:
            log.warning('Could not remove remote script {}: {}', remote_path, ex)
            return
        if code != 0:
            log.warning(
                'Could not remove remote script {} (exit status {}): {}',
                remote_path,
                code,
                output,
            )

    def execute_script(
        self, vmid: int, script_path: str, args: list[str], timeout: int = 0
    ) -> RemoteCommand:
        local = Path(expand(script_path))
        try:
            content = local.read_bytes()
        except OSError as ex:
            raise ProximaError(f'failed to read script file {local}: {ex}') from ex
        remote_path = f'{REMOTE_TMP_DIR}/{local.name}'
        host = self._guest_host(vmid)
        record = RemoteCommand(
            vmid=vmid, command=remote_path, args=list(args), timeout=timeout
        )
        client = self._open(host, record)
        try:
            record.start()
            try:
                self._upload(client, remote_path, content)
            except ProximaError as ex:
                record.fail(str(ex))
                ex.command = record
                raise
            quoted = shlex.quote(remote_path)
            line = ' '.join([f'chmod +x {quoted} && {quoted}', *args])
            self._execute(client, record, line)
        finally:
            self._cleanup(client, remote_path)
            client.close()
        return record

    def copy_local_public_key(self, vmid: int) -> None:
        if not self.settings.copy_local_key:
            raise UnsupportedError('key copy is disabled')
        pub_path = Path(expand(self.settings.public_key_path))
        try:
            public_key = pub_path.read_text(encoding='utf-8').strip()
        except OSError as ex:
            raise ProximaError(
                f'failed to read public key from {pub_path}: {ex}'
            ) from ex
        host = self._guest_host(vmid)
        client = self._connect(host)
        try:
            line = (
                'mkdir -p ~/.ssh && chmod 700 ~/.ssh && '
                f'echo {shlex.quote(public_key)} >> ~/.ssh/authorized_keys && '
                'chmod 600 ~/.ssh/authorized_keys'
            )
            code, output = self._run(client, line)
        finally:
            client.close()
        if code != 0:
            raise CommandFailedError(
                f'failed to copy public key to VM {vmid} (exit status {code}): {output}'
            )
        log.info('Copied {} to VM {}', pub_path, vmid)
