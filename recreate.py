"""Replace a container with one running a new image.

The container's configuration is captured with an inspect call, then the
container is stopped, removed, created again from the captured settings and
started::

    RUNNING -> INSPECTED -> STOPPED -> REMOVED -> CREATED -> STARTED -> VERIFIED
                        (any step) -> FAILED

Removal frees the container name so the replacement can reuse it.  Once the
old container is removed it cannot be recovered: a failure after REMOVED
leaves no container under that name until the next pass recreates it.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from engine_client import ContainerInfo, ContainerInspect, EngineAPI
from op_result import ErrorKind, OpResult
from registry_client import normalize_digest

logger = logging.getLogger(__name__)


class RecreateState(Enum):
    RUNNING = 'running'
    INSPECTED = 'inspected'
    STOPPED = 'stopped'
    REMOVED = 'removed'
    CREATED = 'created'
    STARTED = 'started'
    VERIFIED = 'verified'
    FAILED = 'failed'


@dataclass
class RecreateResult:
    container_name: str
    state: RecreateState = RecreateState.RUNNING
    new_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    verified: bool = False
    history: List[RecreateState] = field(default_factory=lambda: [RecreateState.RUNNING])

    @property
    def success(self) -> bool:
        return self.state in (RecreateState.STARTED, RecreateState.VERIFIED)

    @property
    def container_lost(self) -> bool:
        """True when the old container is gone and no replacement is running."""
        return not self.success and RecreateState.REMOVED in self.history

    def advance(self, state: RecreateState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, step: str, result: OpResult) -> 'RecreateResult':
        self.error = f"{step} failed: {result.error}"
        self.error_kind = result.kind
        self.advance(RecreateState.FAILED)
        return self


def shares_network_namespace(network_mode: str) -> bool:
    return network_mode == 'host' or network_mode.startswith('container:')


def build_create_body(image: str, inspect: ContainerInspect) -> Dict[str, Any]:
    """Docker Engine API container-create body reproducing a captured container."""
    shared_netns = shares_network_namespace(inspect.network_mode)

    body: Dict[str, Any] = {'Image': image}

    # Hostname is not allowed with host or container: network modes, and the
    # engine default (short id) must not be carried over to the new container
    if not shared_netns and inspect.hostname and inspect.hostname != inspect.id[:12]:
        body['Hostname'] = inspect.hostname
    if inspect.user:
        body['User'] = inspect.user
    if inspect.working_dir:
        body['WorkingDir'] = inspect.working_dir

    body['Env'] = list(inspect.env)
    if inspect.cmd:
        body['Cmd'] = list(inspect.cmd)
    if inspect.exposed_ports:
        body['ExposedPorts'] = {port: {} for port in inspect.exposed_ports}
    body['Labels'] = dict(inspect.labels)

    host_config: Dict[str, Any] = {}

    if inspect.restart_policy and inspect.restart_policy.name != 'no':
        host_config['RestartPolicy'] = {
            'Name': inspect.restart_policy.name,
            'MaximumRetryCount': inspect.restart_policy.maximum_retry_count,
        }

    if not shared_netns and inspect.port_bindings:
        host_config['PortBindings'] = {
            port: [{'HostIp': b.host_ip, 'HostPort': b.host_port} for b in bindings]
            for port, bindings in inspect.port_bindings.items()
        }

    if inspect.binds:
        host_config['Binds'] = list(inspect.binds)

    if inspect.network_mode and inspect.network_mode != 'default':
        host_config['NetworkMode'] = inspect.network_mode

    if inspect.privileged:
        host_config['Privileged'] = True
    if inspect.cap_add:
        host_config['CapAdd'] = list(inspect.cap_add)
    if inspect.cap_drop:
        host_config['CapDrop'] = list(inspect.cap_drop)
    if inspect.devices:
        host_config['Devices'] = [dict(d) for d in inspect.devices]

    # Resource limits
    if inspect.memory:
        host_config['Memory'] = inspect.memory
    if inspect.cpu_shares:
        host_config['CpuShares'] = inspect.cpu_shares
    if inspect.cpu_quota:
        host_config['CpuQuota'] = inspect.cpu_quota

    if inspect.security_opt:
        host_config['SecurityOpt'] = list(inspect.security_opt)
    if inspect.runtime:
        host_config['Runtime'] = inspect.runtime

    body['HostConfig'] = host_config

    # Primary endpoint settings (aliases, static IPs) for user-defined networks
    if not inspect.network_mode.startswith('container:'):
        endpoint = inspect.networks.get(inspect.network_mode)
        if endpoint:
            body['NetworkingConfig'] = {'EndpointsConfig': {inspect.network_mode: endpoint}}

    return body


class LifecycleRecreator:
    def __init__(self, engine: EngineAPI):
        self.engine = engine

    def recreate(self, container: ContainerInfo, new_image: str,
                 expected_image_id: Optional[str] = None) -> RecreateResult:
        """
        Recreate a container bound to ``new_image``.

        Args:
            container: Container to replace
            new_image: Image reference for the replacement
            expected_image_id: Local image id the replacement should run,
                used for verification

        Returns:
            RecreateResult; success once the new container has started,
            whether or not verification passed
        """
        name = container.short_name
        result = RecreateResult(container_name=name)

        captured = self.engine.inspect_container(container.id)
        if not captured:
            logger.error(f"Could not capture configuration of {name}; leaving it untouched")
            return result.fail('Inspect', captured)
        inspect: ContainerInspect = captured.value
        result.advance(RecreateState.INSPECTED)

        body = build_create_body(new_image, inspect)

        logger.info(f"Stopping container {name}...")
        stopped = self.engine.stop_container(container.id)
        if not stopped:
            return result.fail('Stop', stopped)
        result.advance(RecreateState.STOPPED)

        logger.info(f"Removing container {name}...")
        removed = self.engine.remove_container(container.id)
        if not removed:
            return result.fail('Remove', removed)
        result.advance(RecreateState.REMOVED)

        logger.info(f"Creating new container {name} from {new_image}...")
        created = self.engine.create_container(name, body)
        if not created:
            logger.error(f"Container {name} was removed and could not be recreated; "
                         f"it stays absent until the next attempt")
            return result.fail('Create', created)
        result.new_id = created.value
        result.advance(RecreateState.CREATED)

        logger.info(f"Starting container {name}...")
        started = self.engine.start_container(result.new_id)
        if not started:
            logger.error(f"Container {name} was created but did not start")
            return result.fail('Start', started)
        result.advance(RecreateState.STARTED)

        if self._verify(name, result.new_id, expected_image_id):
            result.verified = True
            result.advance(RecreateState.VERIFIED)

        logger.info(f"Successfully recreated container {name}")
        return result

    def _verify(self, name: str, new_id: str, expected_image_id: Optional[str]) -> bool:
        """Confirm the new container exists and runs the expected image.

        Failures are warnings only; the container has already started.
        """
        info = self.engine.get_container_info(new_id)
        if info is None:
            logger.warning(f"Could not re-fetch container {name} after recreation")
            return False
        if expected_image_id and info.image_id and \
                normalize_digest(info.image_id) != normalize_digest(expected_image_id):
            logger.warning(f"Container {name} runs image {info.image_id}, "
                           f"expected {expected_image_id}")
            return False
        logger.debug(f"Verified container {name} ({new_id[:12]}) runs {info.image_id}")
        return True
