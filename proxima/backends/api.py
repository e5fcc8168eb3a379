"""Hypervisor backend over the Proxmox VE HTTPS management API."""

from __future__ import annotations

import time
from typing import Any, Callable

import requests
import urllib3
from loguru import logger

from ..errors import (
    AuthenticationError,
    NotFoundError,
    ProvisioningError,
    ProximaError,
    TransportError,
)
from ..models import VM, VMStatus
from ..ports import HypervisorBackend, resolve_template_id
from ..runtime import ApiAuth
from .guest_agent import (
    PREFERRED_INTERFACES,
    interfaces_from_payload,
    pick_guest_ipv4,
)

log = logger

HTTP_TIMEOUT = 30
CLONE_SETTLE_SECONDS = 2
MIB = 1024 * 1024
GUEST_IP_OFFSET = 100


def default_vm_ip_base(host: str) -> str:
    """Derive ``a.b.c`` from the hypervisor's dotted-quad host address."""
    parts = host.split('.')
    if len(parts) == 4 and all(p.isdigit() for p in parts):
        return '.'.join(parts[:3])
    return '192.168.1'


def _vm_from_record(record: dict[str, Any], vmid: int | None = None) -> VM:
    vm = VM(
        name=str(record.get('name', '') or ''),
        vmid=int(record.get('vmid', vmid or 0) or 0),
    )
    vm.status = VMStatus.coerce(str(record.get('status', '')))
    vm.cores = int(record.get('cpus', 0) or 0)
    vm.memory = int(record.get('maxmem', 0) or 0) // MIB
    tags = str(record.get('tags', '') or '')
    vm.tags = [t for t in tags.replace(',', ';').split(';') if t]
    return vm


class ApiBackend(HypervisorBackend):
    """Talk to one node of the management API.

    Authentication happens lazily on the first call and is cached for the
    lifetime of the instance. There is no re-login: a 401 surfaces as an
    :class:`AuthenticationError`.
    """

    def __init__(
        self,
        host: str,
        node: str,
        *,
        port: int = 8006,
        auth: ApiAuth = ApiAuth.TICKET,
        user: str = '',
        password: str = '',
        api_token: str = '',
        vm_ip_base: str = '',
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.port = port
        self.node = node
        self.auth = auth
        self.user = user
        self.password = password
        self.api_token = api_token
        self.vm_ip_base = vm_ip_base or default_vm_ip_base(host)
        self._sleep = sleep
        self._ticket = ''
        self._csrf_token = ''
        if session is None:
            # Hypervisor nodes ship self-signed certificates.
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            session = requests.Session()
            session.verify = False
        self.session = session

    def __repr__(self) -> str:
        return f'ApiBackend({self.host}:{self.port}, node={self.node})'

    @property
    def base_url(self) -> str:
        return f'https://{self.host}:{self.port}/api2/json'

    def _node_url(self, suffix: str) -> str:
        return f'{self.base_url}/nodes/{self.node}/qemu{suffix}'

    @property
    def authenticated(self) -> bool:
        return bool(self._ticket)

    def _login(self) -> None:
        if self.auth is ApiAuth.TOKEN:
            if not self.api_token:
                raise AuthenticationError('API token authentication selected but no token configured')
            log.info('Using API token authentication for {}:{}', self.host, self.port)
            self._ticket = self.api_token
            return
        log.info('Logging into {}:{} as user {}', self.host, self.port, self.user)
        try:
            resp = self.session.post(
                f'{self.base_url}/access/ticket',
                data={'username': self.user, 'password': self.password},
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as ex:
            raise TransportError(f'failed to login to {self.host}: {ex}') from ex
        try:
            if resp.status_code != 200:
                raise AuthenticationError(
                    f'login rejected for user {self.user} on {self.host} '
                    f'(status {resp.status_code}): {resp.text}',
                    status_code=resp.status_code,
                )
            try:
                data = resp.json().get('data') or {}
            except ValueError as ex:
                raise TransportError(f'failed to parse login response: {ex}') from ex
        finally:
            resp.close()
        ticket = data.get('ticket', '')
        if not ticket:
            raise AuthenticationError(
                f'login for user {self.user} on {self.host} returned no ticket'
            )
        self._ticket = ticket
        self._csrf_token = data.get('CSRFPreventionToken', '')

    def _headers(self, method: str) -> dict[str, str]:
        if self.auth is ApiAuth.TOKEN:
            return {'Authorization': f'PVEAPIToken={self._ticket}'}
        headers = {'Cookie': f'PVEAuthCookie={self._ticket}'}
        if method != 'GET' and self._csrf_token:
            headers['CSRFPreventionToken'] = self._csrf_token
        return headers

    def _request(
        self,
        method: str,
        url: str,
        *,
        what: str,
        data: dict[str, Any] | None = None,
        error_cls: type[ProximaError] = TransportError,
    ) -> Any:
        if not self.authenticated:
            self._login()
        try:
            resp = self.session.request(
                method,
                url,
                data=data,
                headers=self._headers(method),
                timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as ex:
            raise TransportError(f'failed to {what}: {ex}') from ex
        try:
            body = resp.text
            if resp.status_code == 401:
                raise AuthenticationError(
                    f'authentication failed - check credentials in the config '
                    f'(user: {self.user}, host: {self.host})',
                    status_code=401,
                )
            if resp.status_code != 200:
                cls = error_cls
                if resp.status_code == 404 or 'does not exist' in body:
                    cls = NotFoundError
                raise cls(
                    f'failed to {what} (status {resp.status_code}): {body}',
                    status_code=resp.status_code,
                )
            try:
                return resp.json().get('data')
            except ValueError as ex:
                raise TransportError(
                    f'failed to parse response to {what}: {ex}',
                    status_code=resp.status_code,
                ) from ex
        finally:
            resp.close()

    def create(self, vm: VM) -> None:
        log.info(
            "Creating VM {} (ID: {}) from template '{}'", vm.name, vm.vmid, vm.template
        )
        template_id = resolve_template_id(self, vm.template)
        log.info('Cloning from template ID {}', template_id)
        self._request(
            'POST',
            self._node_url(f'/{template_id}/clone'),
            what=f'clone template {template_id} into VM {vm.vmid}',
            data={'newid': vm.vmid, 'name': vm.name, 'full': 1},
            error_cls=ProvisioningError,
        )
        # The clone task holds a lock on the new VM for a moment.
        self._sleep(CLONE_SETTLE_SECONDS)
        config: dict[str, Any] = {
            'cores': vm.cores,
            'memory': vm.memory,
            'net0': vm.network.descriptor(),
        }
        if vm.tags:
            config['tags'] = ';'.join(vm.tags)
        try:
            self._request(
                'POST',
                self._node_url(f'/{vm.vmid}/config'),
                what=f'update config of VM {vm.vmid}',
                data=config,
                error_cls=ProvisioningError,
            )
        except ProximaError as ex:
            raise ProvisioningError(
                f'VM {vm.vmid} cloned but failed to update config: {ex}',
                status_code=ex.status_code,
            ) from ex

    def get_by_id(self, vmid: int) -> VM:
        record = self._request(
            'GET',
            self._node_url(f'/{vmid}/status/current'),
            what=f'get VM {vmid}',
        )
        return _vm_from_record(record or {}, vmid)

    def delete(self, vmid: int) -> None:
        self._request('DELETE', self._node_url(f'/{vmid}'), what=f'delete VM {vmid}')

    def list(self) -> list[VM]:
        records = self._request('GET', self._node_url(''), what='list VMs') or []
        return [_vm_from_record(rec) for rec in records]

    def _power(self, vmid: int, action: str) -> None:
        self._request(
            'POST',
            self._node_url(f'/{vmid}/status/{action}'),
            what=f'{action} VM {vmid}',
        )

    def start(self, vmid: int) -> None:
        self._power(vmid, 'start')

    def stop(self, vmid: int) -> None:
        self._power(vmid, 'stop')

    def shutdown(self, vmid: int) -> None:
        self._power(vmid, 'shutdown')

    def get_status(self, vmid: int) -> VMStatus | str:
        return self.get_by_id(vmid).status

    def fallback_guest_address(self, vmid: int) -> str:
        return f'{self.vm_ip_base}.{vmid + GUEST_IP_OFFSET}'

    def resolve_guest_address(self, vmid: int) -> str:
        try:
            payload = self._request(
                'GET',
                self._node_url(f'/{vmid}/agent/network-get-interfaces'),
                what=f'query guest agent of VM {vmid}',
            )
        except (TransportError, NotFoundError) as ex:
            if isinstance(ex, TransportError) and ex.status_code is None:
                raise
            log.debug('Guest agent unavailable for VM {}: {}', vmid, ex)
        else:
            ip = pick_guest_ipv4(
                interfaces_from_payload(payload), PREFERRED_INTERFACES
            )
            if ip is not None:
                return ip
        ip = self.fallback_guest_address(vmid)
        log.info('Using fallback guest address {} for VM {}', ip, vmid)
        return ip
