"""In-memory engine and registry used across the test suite."""

from typing import Any, Dict, List, Optional

import pytest

from engine_client import ContainerInfo, ContainerInspect, ImageInfo
from op_result import ErrorKind, OpResult


def make_container(name: str = '/app', image: str = 'nginx:1.2.3',
                   image_id: str = 'sha256:' + 'a' * 64, **overrides) -> ContainerInfo:
    fields = {
        'id': overrides.pop('id', name.lstrip('/') + '-id'),
        'name': name,
        'image': image,
        'image_id': image_id,
        'labels': {},
        'status': 'running',
    }
    fields.update(overrides)
    return ContainerInfo(**fields)


def make_inspect_payload(**overrides) -> Dict[str, Any]:
    """Build a minimal docker inspect result with sensible defaults."""
    info = {
        'Id': 'abcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890',
        'Name': '/app',
        'Image': 'sha256:' + 'a' * 64,
        'Config': {
            'Image': 'nginx:1.2.3',
            'Hostname': 'abcdef123456',  # matches Id[:12] by default
            'User': '',
            'WorkingDir': '',
            'Env': ['PATH=/usr/bin:/bin'],
            'ExposedPorts': None,
            'Labels': {},
            'Cmd': None,
        },
        'HostConfig': {
            'RestartPolicy': {'Name': '', 'MaximumRetryCount': 0},
            'NetworkMode': 'default',
            'PortBindings': None,
            'Binds': None,
            'Privileged': False,
            'CapAdd': None,
            'CapDrop': None,
            'Devices': None,
            'Memory': 0,
            'CpuShares': 0,
            'CpuQuota': 0,
            'SecurityOpt': None,
            'Runtime': '',
        },
        'Mounts': [],
        'NetworkSettings': {'Networks': {}},
    }
    # Apply overrides by merging into nested dicts
    for key, value in overrides.items():
        if key in info and isinstance(info[key], dict) and isinstance(value, dict):
            info[key].update(value)
        else:
            info[key] = value
    return info


class FakeEngine:
    """Container engine that keeps containers and images in dictionaries."""

    def __init__(self):
        self.containers: Dict[str, ContainerInfo] = {}
        self.inspects: Dict[str, Dict[str, Any]] = {}
        self.images: Dict[str, ImageInfo] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, OpResult] = {}
        self.created_bodies: Dict[str, Dict[str, Any]] = {}
        self._next_id = 0
        self.closed = False

    def add_container(self, container: ContainerInfo,
                      inspect: Optional[Dict[str, Any]] = None) -> ContainerInfo:
        self.containers[container.id] = container
        payload = inspect or make_inspect_payload()
        payload['Id'] = container.id
        payload['Name'] = container.name
        self.inspects[container.id] = payload
        return container

    def fail(self, operation: str, error: str = 'boom', kind: ErrorKind = ErrorKind.ENGINE) -> None:
        self.failures[operation] = OpResult.failure(error, kind)

    def _failure(self, operation: str) -> Optional[OpResult]:
        return self.failures.get(operation)

    def list_containers(self, all=False, filters=None):
        self.calls.append(('list', all, filters))
        return list(self.containers.values())

    def running_containers(self):
        return [c for c in self.list_containers() if c.status == 'running']

    def get_container_info(self, container_id):
        self.calls.append(('info', container_id))
        return self.containers.get(container_id)

    def inspect_container(self, container_id):
        self.calls.append(('inspect', container_id))
        if self._failure('inspect') is not None:
            return self._failure('inspect')
        payload = self.inspects.get(container_id)
        if payload is None:
            return OpResult.failure('No such container', ErrorKind.ENGINE)
        return OpResult.success(ContainerInspect.from_api(payload))

    def get_image_info(self, image):
        self.calls.append(('image', image))
        return self.images.get(image)

    def stop_container(self, container_id):
        self.calls.append(('stop', container_id))
        failure = self._failure('stop')
        return failure if failure is not None else OpResult.success()

    def remove_container(self, container_id):
        self.calls.append(('remove', container_id))
        if self._failure('remove') is not None:
            return self._failure('remove')
        self.containers.pop(container_id, None)
        return OpResult.success()

    def create_container(self, name, body):
        self.calls.append(('create', name))
        if self._failure('create') is not None:
            return self._failure('create')
        self._next_id += 1
        new_id = f"new-{self._next_id}"
        self.created_bodies[new_id] = body
        image_info = self.images.get(body['Image'])
        self.containers[new_id] = ContainerInfo(
            id=new_id, name=f"/{name}", image=body['Image'],
            image_id=image_info.id if image_info else '', status='created')
        return OpResult.success(new_id)

    def start_container(self, container_id):
        self.calls.append(('start', container_id))
        failure = self._failure('start')
        return failure if failure is not None else OpResult.success()

    def pull_image(self, image, tag='latest'):
        self.calls.append(('pull', image, tag))
        failure = self._failure('pull')
        return failure if failure is not None else OpResult.success()

    def get_container_logs(self, container_id, tail=100):
        return ''

    def close(self):
        self.closed = True

    def operations(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakeRegistry:
    """Registry serving fixed tag lists and digests."""

    def __init__(self):
        self.tags: Dict[tuple, List[str]] = {}
        self.digests: Dict[tuple, str] = {}
        self.requests: List[tuple] = []

    def set_tags(self, host: str, repo: str, tags: List[str]) -> None:
        self.tags[(host, repo)] = tags

    def set_digest(self, host: str, repo: str, tag: str, digest: str) -> None:
        self.digests[(host, repo, tag)] = digest

    def list_tags(self, host, repository_path):
        self.requests.append(('tags', host, repository_path))
        return list(self.tags.get((host, repository_path), []))

    def fetch_manifest_digest(self, host, repository_path, tag):
        self.requests.append(('manifest', host, repository_path, tag))
        return self.digests.get((host, repository_path, tag))

    def get_token(self, host, repository_path):
        return None


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def registry():
    return FakeRegistry()
