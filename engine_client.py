"""Docker Engine API client over the local Unix socket.

Every call catches and logs at this boundary: read operations degrade to
empty/None results and mutating operations return an :class:`OpResult`, so
the update logic above never has to handle transport exceptions.
"""

import json
import logging
import os
import socket as _socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

from op_result import ErrorKind, OpResult, describe_error, guarded
from registry_client import resolve

logger = logging.getLogger(__name__)

DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 300  # image pulls can take a while
STOP_TIMEOUT = 10


# ---------------------------------------------------------------------------
# Unix socket transport
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.settimeout(REQUEST_TIMEOUT)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool whose connections all open the same socket file."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that sends every request to the engine socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        self._socket_pool: Optional[_UnixSocketPool] = None
        super().__init__()

    def _pool(self) -> _UnixSocketPool:
        if self._socket_pool is None:
            self._socket_pool = _UnixSocketPool(self._socket_path)
        return self._socket_pool

    def get_connection(self, url: str, proxies=None):
        return self._pool()

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return self._pool()

    def close(self):
        if self._socket_pool is not None:
            self._socket_pool.close()
            self._socket_pool = None
        super().close()


# ---------------------------------------------------------------------------
# Typed views over engine payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContainerInfo:
    """Snapshot of a container as reported by the container list endpoint."""
    id: str
    name: str  # leading-slash form, e.g. "/flatnotes"
    image: str
    image_id: str
    labels: Dict[str, str] = field(default_factory=dict)
    status: str = 'unknown'
    created: Optional[datetime] = None

    @property
    def short_name(self) -> str:
        return self.name.lstrip('/')

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ContainerInfo':
        container_id = data.get('Id') or ''
        names = data.get('Names') or []
        # Containers without a name fall back to the short id
        name = names[0] if names else f"/{container_id[:12]}"
        created = data.get('Created')
        return cls(
            id=container_id,
            name=name,
            image=data.get('Image') or '',
            image_id=data.get('ImageID') or '',
            labels=dict(data.get('Labels') or {}),
            status=data.get('State') or data.get('Status') or 'unknown',
            created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        )


@dataclass(frozen=True)
class ImageInfo:
    id: str
    repo_tags: List[str] = field(default_factory=list)
    repo_digests: List[str] = field(default_factory=list)

    def repo_digest_for(self, image: str) -> Optional[str]:
        """Manifest digest recorded when the image was pulled from ``image``'s repository.

        An image tagged into several registries carries one ``RepoDigests``
        entry per repository; entries for other repositories are ignored.
        """
        wanted = resolve(image)
        for entry in self.repo_digests:
            name, _, digest = entry.partition('@')
            if digest and resolve(name) == wanted:
                return digest
        return None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ImageInfo':
        return cls(
            id=data.get('Id') or '',
            repo_tags=list(data.get('RepoTags') or []),
            repo_digests=list(data.get('RepoDigests') or []),
        )


class PortBinding(NamedTuple):
    host_ip: str
    host_port: str


@dataclass(frozen=True)
class RestartPolicy:
    name: str
    maximum_retry_count: int = 0


@dataclass(frozen=True)
class ContainerInspect:
    """Configuration captured from ``GET /containers/{id}/json``.

    Only the fields needed to recreate the container are kept.  Every
    optional block in the payload may be null and is normalized here.
    """
    id: str
    name: str
    image: str
    image_id: str
    env: List[str] = field(default_factory=list)
    exposed_ports: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    port_bindings: Dict[str, List[PortBinding]] = field(default_factory=dict)
    binds: List[str] = field(default_factory=list)
    restart_policy: Optional[RestartPolicy] = None
    labels: Dict[str, str] = field(default_factory=dict)
    hostname: str = ''
    user: str = ''
    working_dir: str = ''
    network_mode: str = 'default'
    networks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cmd: List[str] = field(default_factory=list)
    # Privileges and resource limits; zero/empty means the engine default
    privileged: bool = False
    cap_add: List[str] = field(default_factory=list)
    cap_drop: List[str] = field(default_factory=list)
    devices: List[Dict[str, Any]] = field(default_factory=list)
    memory: int = 0
    cpu_shares: int = 0
    cpu_quota: int = 0
    security_opt: List[str] = field(default_factory=list)
    runtime: str = ''

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ContainerInspect':
        config = data.get('Config') or {}
        host_config = data.get('HostConfig') or {}

        port_bindings: Dict[str, List[PortBinding]] = {}
        for port, bindings in (host_config.get('PortBindings') or {}).items():
            port_bindings[port] = [
                PortBinding(b.get('HostIp') or '', b.get('HostPort') or '')
                for b in (bindings or [])
            ]

        restart = host_config.get('RestartPolicy') or {}
        restart_policy = None
        if restart.get('Name'):
            restart_policy = RestartPolicy(restart['Name'], restart.get('MaximumRetryCount') or 0)

        binds = list(host_config.get('Binds') or [])
        if not binds:
            binds = _binds_from_mounts(data.get('Mounts') or [])

        return cls(
            id=data['Id'],
            name=data.get('Name') or '',
            image=config.get('Image') or '',
            image_id=data.get('Image') or '',
            env=list(config.get('Env') or []),
            exposed_ports=dict(config.get('ExposedPorts') or {}),
            port_bindings=port_bindings,
            binds=binds,
            restart_policy=restart_policy,
            labels=dict(config.get('Labels') or {}),
            hostname=config.get('Hostname') or '',
            user=config.get('User') or '',
            working_dir=config.get('WorkingDir') or '',
            network_mode=host_config.get('NetworkMode') or 'default',
            networks=dict((data.get('NetworkSettings') or {}).get('Networks') or {}),
            cmd=list(config.get('Cmd') or []),
            privileged=bool(host_config.get('Privileged')),
            cap_add=list(host_config.get('CapAdd') or []),
            cap_drop=list(host_config.get('CapDrop') or []),
            devices=list(host_config.get('Devices') or []),
            memory=host_config.get('Memory') or 0,
            cpu_shares=host_config.get('CpuShares') or 0,
            cpu_quota=host_config.get('CpuQuota') or 0,
            security_opt=list(host_config.get('SecurityOpt') or []),
            runtime=host_config.get('Runtime') or '',
        )


def _binds_from_mounts(mounts: List[Dict[str, Any]]) -> List[str]:
    """Rebuild ``source:destination[:mode]`` bind strings from the Mounts list."""
    binds = []
    for mount in mounts:
        if mount.get('Type') == 'bind':
            source = mount.get('Source')
        elif mount.get('Type') == 'volume':
            source = mount.get('Name')
        else:
            continue
        if not source or not mount.get('Destination'):
            continue
        bind_str = f"{source}:{mount['Destination']}"
        if mount.get('Mode'):
            bind_str += f":{mount['Mode']}"
        binds.append(bind_str)
    return binds


def _demux_log_stream(raw: bytes) -> str:
    """Strip the 8-byte frame headers the engine adds to non-TTY log output."""
    if len(raw) < 8 or raw[0] not in (0, 1, 2) or raw[1:4] != b'\x00\x00\x00':
        return raw.decode('utf-8', errors='replace')

    chunks = []
    pos = 0
    while pos + 8 <= len(raw):
        size = int.from_bytes(raw[pos + 4:pos + 8], 'big')
        chunks.append(raw[pos + 8:pos + 8 + size])
        pos += 8 + size
    return b''.join(chunks).decode('utf-8', errors='replace')


# ---------------------------------------------------------------------------
# Engine client
# ---------------------------------------------------------------------------

class EngineAPI(Protocol):
    """Container engine capabilities the detector, recreator and orchestrator use."""

    def list_containers(self, all: bool = False,
                        filters: Optional[Dict[str, List[str]]] = None) -> List[ContainerInfo]: ...

    def running_containers(self) -> List[ContainerInfo]: ...

    def get_container_info(self, container_id: str) -> Optional[ContainerInfo]: ...

    def inspect_container(self, container_id: str) -> OpResult: ...

    def get_image_info(self, image: str) -> Optional[ImageInfo]: ...

    def stop_container(self, container_id: str) -> OpResult: ...

    def remove_container(self, container_id: str) -> OpResult: ...

    def create_container(self, name: str, body: Dict[str, Any]) -> OpResult: ...

    def start_container(self, container_id: str) -> OpResult: ...

    def pull_image(self, image: str, tag: str = 'latest') -> OpResult: ...

    def get_container_logs(self, container_id: str, tail: int = 100) -> str: ...


class ContainerEngineClient:
    """Minimal Docker Engine API v1.41 client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self.socket_path = socket_path
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def _request(self, method: str, path: str, timeout: float = REQUEST_TIMEOUT,
                 **kwargs) -> requests.Response:
        r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
        r.raise_for_status()
        return r

    def _send(self, method: str, path: str, **kwargs) -> None:
        """Request whose response body carries nothing of interest."""
        self._request(method, path, **kwargs)

    def close(self) -> None:
        self._session.close()

    # -- queries -----------------------------------------------------------

    def list_containers(self, all: bool = False,
                        filters: Optional[Dict[str, List[str]]] = None) -> List[ContainerInfo]:
        params = {'all': '1' if all else '0'}
        if filters:
            params['filters'] = json.dumps(filters)

        result = guarded(
            'List containers',
            lambda: [ContainerInfo.from_api(c)
                     for c in self._request('GET', '/containers/json', params=params).json()],
            logger,
        )
        return result.value if result else []

    def running_containers(self) -> List[ContainerInfo]:
        return self.list_containers(all=False, filters={'status': ['running']})

    def get_container_info(self, container_id: str) -> Optional[ContainerInfo]:
        containers = self.list_containers(all=True, filters={'id': [container_id]})
        return containers[0] if containers else None

    def inspect_container(self, container_id: str) -> OpResult:
        """Full configuration of a container as a :class:`ContainerInspect`."""
        return guarded(
            f"Inspect container {container_id}",
            lambda: ContainerInspect.from_api(
                self._request('GET', f'/containers/{container_id}/json').json()),
            logger,
        )

    def get_image_info(self, image: str) -> Optional[ImageInfo]:
        try:
            response = self._request('GET', f'/images/{image}/json')
            return ImageInfo.from_api(response.json())
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                logger.debug(f"Image {image} not present locally")
            else:
                logger.error(f"Error inspecting image {image}: {describe_error(e)}")
            return None
        except requests.RequestException as e:
            logger.error(f"Network error inspecting image {image}: {e}")
            return None
        except ValueError as e:
            logger.error(f"Error parsing image info for {image}: {e}")
            return None

    def get_container_logs(self, container_id: str, tail: int = 100) -> str:
        result = guarded(
            f"Fetch logs for {container_id}",
            lambda: self._request('GET', f'/containers/{container_id}/logs',
                                  params={'stdout': '1', 'stderr': '1', 'tail': str(tail)}).content,
            logger,
        )
        return _demux_log_stream(result.value) if result else ''

    # -- lifecycle ---------------------------------------------------------

    def stop_container(self, container_id: str, timeout: int = STOP_TIMEOUT) -> OpResult:
        # 304 (already stopped) passes raise_for_status
        return guarded(
            f"Stop container {container_id}",
            lambda: self._send('POST', f'/containers/{container_id}/stop',
                               params={'t': str(timeout)}, timeout=REQUEST_TIMEOUT + timeout),
            logger,
        )

    def remove_container(self, container_id: str, force: bool = False) -> OpResult:
        return guarded(
            f"Remove container {container_id}",
            lambda: self._send('DELETE', f'/containers/{container_id}',
                               params={'force': '1' if force else '0'}),
            logger,
        )

    def create_container(self, name: str, body: Dict[str, Any]) -> OpResult:
        """Create a container; the result value is the new container id."""
        return guarded(
            f"Create container {name}",
            lambda: self._request('POST', '/containers/create',
                                  params={'name': name}, json=body).json()['Id'],
            logger,
        )

    def start_container(self, container_id: str) -> OpResult:
        return guarded(
            f"Start container {container_id}",
            lambda: self._send('POST', f'/containers/{container_id}/start'),
            logger,
        )

    def pull_image(self, image: str, tag: str = 'latest') -> OpResult:
        """
        Pull an image via the Engine API.

        The engine reports pull failures inside the JSON progress stream
        with a 200 status, so the stream is consumed to the end.
        """
        full_image = f"{image}:{tag}"
        logger.info(f"Pulling {full_image}...")

        try:
            response = self._request('POST', '/images/create',
                                     params={'fromImage': image, 'tag': tag},
                                     stream=True, timeout=PULL_TIMEOUT)
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    logger.error(f"Error pulling {full_image}: {event['error']}")
                    return OpResult.failure(event['error'], ErrorKind.ENGINE)
        except requests.RequestException as e:
            message = describe_error(e)
            logger.error(f"Error pulling {full_image}: {message}")
            kind = ErrorKind.ENGINE if isinstance(e, requests.HTTPError) else ErrorKind.NETWORK
            return OpResult.failure(message, kind)

        logger.info(f"Successfully pulled {full_image}")
        return OpResult.success()
