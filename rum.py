#!/usr/bin/env python3
"""
Running-container Update Manager

Checks every running container for a newer image in its registry and, when
allowed, recreates the container on the new image with its original
environment, ports, volumes, labels and restart policy.

Latest-style tags are compared by content digest; version tags are compared
against the registry's tag list by semantic version.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import jsonschema

from _version import __version__
from engine_client import DOCKER_SOCKET_PATH, ContainerEngineClient, ContainerInfo, EngineAPI
from recreate import LifecycleRecreator
from registry_client import RegistryAPI, RegistryClient, split_image_ref
from update_detector import UpdateDetector

logger = logging.getLogger('rum')

DEFAULT_INTERVAL = 300
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR')

# Configuration file schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "interval": {"type": "integer", "minimum": 1},
        "allow_major_upgrade": {"type": "boolean"},
        "docker_socket": {"type": "string", "minLength": 1},
        "log_level": {"type": "string", "enum": list(LOG_LEVELS)},
        "run_once": {"type": "boolean"},
        "dry_run": {"type": "boolean"},
        "container_names": {
            "type": "array",
            "items": {"type": "string", "minLength": 1}
        }
    },
    "additionalProperties": False
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class RumConfig:
    interval: int = DEFAULT_INTERVAL
    allow_major_upgrade: bool = False
    docker_socket: str = DOCKER_SOCKET_PATH
    log_level: str = 'INFO'
    run_once: bool = False
    dry_run: bool = False
    container_names: List[str] = field(default_factory=list)

    @classmethod
    def from_file(cls, path: str) -> 'RumConfig':
        """Load and validate a JSON configuration file."""
        with open(path, 'r') as f:
            data = json.load(f)
        jsonschema.validate(data, CONFIG_SCHEMA)
        return cls(**data)

    def validate(self) -> None:
        errors = []
        if self.interval <= 0:
            errors.append("Interval must be greater than 0")
        if not self.docker_socket:
            errors.append("Docker socket path cannot be empty")
        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        if errors:
            raise ValueError("Configuration errors: " + "; ".join(errors))

    def describe(self) -> str:
        names = ', '.join(self.container_names) if self.container_names else 'all'
        return (
            f"interval={self.interval}s allow_major_upgrade={self.allow_major_upgrade} "
            f"socket={self.docker_socket} log_level={self.log_level} "
            f"run_once={self.run_once} dry_run={self.dry_run} containers={names}"
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass
class UpdateResult:
    container: ContainerInfo
    updated: bool
    error: Optional[str] = None

    def to_report(self) -> Dict[str, Any]:
        return {'updated': self.updated, 'error': self.error}


@dataclass
class DryRunResult:
    container: ContainerInfo
    needs_update: bool
    reason: Optional[str] = None


def normalize_container_name(name: str) -> str:
    return name if name.startswith('/') else f"/{name}"


def filter_containers(containers: Iterable[ContainerInfo],
                      name_filter: Optional[Iterable[str]]) -> List[ContainerInfo]:
    """Containers whose name is in the filter; an empty filter keeps all.

    ``"x"`` and ``"/x"`` both match a container reported as ``"/x"``.
    """
    containers = list(containers)
    wanted = {normalize_container_name(n) for n in (name_filter or []) if n}
    if not wanted:
        return containers
    return [c for c in containers if normalize_container_name(c.name) in wanted]


class UpdateOrchestrator:
    """Runs detection and recreation over the host's running containers, one at a time."""

    def __init__(self, engine: EngineAPI, registry: Optional[RegistryAPI] = None,
                 detector: Optional[UpdateDetector] = None,
                 recreator: Optional[LifecycleRecreator] = None):
        self.engine = engine
        self.detector = detector or UpdateDetector(engine, registry or RegistryClient())
        self.recreator = recreator or LifecycleRecreator(engine)

    def _containers(self, name_filter: Optional[Iterable[str]]) -> List[ContainerInfo]:
        name_filter = list(name_filter or [])
        containers = filter_containers(self.engine.running_containers(), name_filter)
        if name_filter:
            logger.info(f"Filtered to {len(containers)} container(s) matching: {', '.join(name_filter)}")
        return containers

    def check_and_update(self, allow_major_upgrade: bool = False,
                         name_filter: Optional[Iterable[str]] = None) -> List[UpdateResult]:
        """Check every selected container and recreate those with an update."""
        logger.info("Starting container update check")
        containers = self._containers(name_filter)
        logger.info(f"Found {len(containers)} running container(s)")

        results = []
        for container in containers:
            logger.info(f"Checking container: {container.name} ({container.image})")
            try:
                result = self.update_container(container, allow_major_upgrade)
            except Exception as e:
                logger.exception(f"Unexpected error updating {container.name}")
                result = UpdateResult(container, False, f"Unexpected error: {e}")
            results.append(result)

            if result.updated:
                logger.info(f"Successfully updated container: {container.name}")
            elif result.error:
                logger.error(f"Failed to update container {container.name}: {result.error}")
            else:
                logger.info(f"Container {container.name} is up to date")

        logger.info("Update check completed")
        return results

    def update_container(self, container: ContainerInfo,
                         allow_major_upgrade: bool = False) -> UpdateResult:
        decision = self.detector.evaluate(container, allow_major_upgrade)
        if not decision.has_update:
            return UpdateResult(container, False)

        logger.info(f"Update needed for container: {container.name}")

        ref = split_image_ref(container.image)
        tag = decision.remote_tag or ref.tag or 'latest'
        new_image = f"{ref.name}:{tag}"

        pulled = self.engine.pull_image(ref.name, tag)
        if not pulled:
            return UpdateResult(container, False, f"Failed to pull image {new_image}: {pulled.error}")

        pulled_info = self.engine.get_image_info(new_image)
        expected_image_id = pulled_info.id if pulled_info else None

        recreated = self.recreator.recreate(container, new_image, expected_image_id)
        if not recreated.success:
            error = recreated.error or "Recreation failed"
            if recreated.container_lost:
                error += " (original container was removed)"
            return UpdateResult(container, False, error)

        return UpdateResult(container, True)

    def dry_run(self, allow_major_upgrade: bool = False,
                name_filter: Optional[Iterable[str]] = None) -> List[DryRunResult]:
        """Report which containers would be updated, without pulling or recreating."""
        containers = self._containers(name_filter)
        logger.info(f"Dry run: checking {len(containers)} container(s)")

        results = []
        for container in containers:
            logger.debug(f"Processing container: {container.name} ({container.image})")
            try:
                decision = self.detector.evaluate(container, allow_major_upgrade)
                reason = self.detector.build_reason(container, decision) if decision.has_update else None
                results.append(DryRunResult(container, decision.has_update, reason))
            except Exception as e:
                logger.exception(f"Error processing container {container.name}")
                results.append(DryRunResult(container, False, f"Error processing container: {e}"))
        return results

    def get_containers_needing_update(self, allow_major_upgrade: bool = False,
                                      name_filter: Optional[Iterable[str]] = None) -> List[ContainerInfo]:
        return [c for c in self._containers(name_filter)
                if self.detector.needs_update(c, allow_major_upgrade)]

    def get_update_summary(self, allow_major_upgrade: bool = False,
                           name_filter: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        containers = self._containers(name_filter)
        candidates = [c for c in containers if self.detector.needs_update(c, allow_major_upgrade)]
        return {
            'total': len(containers),
            'needing_update': len(candidates),
            'update_candidates': candidates,
        }

    def get_update_report(self, allow_major_upgrade: bool = False,
                          name_filter: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Per-container ``{hasUpdate, localVersion, remoteVersion}`` keyed by name."""
        report = {}
        for container in self._containers(name_filter):
            decision = self.detector.evaluate(container, allow_major_upgrade)
            report[container.short_name] = decision.to_report()
        return report


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def setup_logging(level: str) -> None:
    """Send all module loggers to stderr in one format."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)


def log_update_results(results: List[UpdateResult]) -> None:
    updated_count = sum(1 for r in results if r.updated)
    error_results = [r for r in results if r.error]

    logger.info(f"Containers checked: {len(results)}")
    logger.info(f"Containers updated: {updated_count}")
    logger.info(f"Errors encountered: {len(error_results)}")
    if error_results:
        logger.error("Some containers failed to update:")
        for r in error_results:
            logger.error(f"  {r.container.name}: {r.error}")


def log_dry_run_results(results: List[DryRunResult]) -> None:
    needing_update = [r for r in results if r.needs_update]
    logger.info(f"Containers checked: {len(results)}")
    logger.info(f"Containers needing updates: {len(needing_update)}")
    if not needing_update:
        logger.info("All containers are up to date")
    for r in needing_update:
        logger.info(f"  {r.container.name}: {r.reason}")


class Daemon:
    """Runs a full pass at a fixed interval until asked to stop.

    A stop request is honoured before the next pass starts; a pass that is
    already running always completes.
    """

    def __init__(self, orchestrator: UpdateOrchestrator, config: RumConfig):
        self.orchestrator = orchestrator
        self.config = config
        self._stop = threading.Event()

    def request_stop(self, signum=None, frame=None) -> None:
        if signum is not None:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down after the current pass...")
        self._stop.set()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.request_stop)
        signal.signal(signal.SIGTERM, self.request_stop)

    def run_pass(self) -> List[UpdateResult]:
        results = self.orchestrator.check_and_update(
            self.config.allow_major_upgrade, self.config.container_names)
        log_update_results(results)
        return results

    def run(self) -> None:
        logger.info(f"Running in daemon mode, checking every {self.config.interval} seconds")
        while self.running:
            try:
                self.run_pass()
            except Exception as e:
                logger.error(f"Error in update cycle: {e}")
            if not self.running:
                break
            logger.info(f"Next check in {self.config.interval} seconds")
            self._stop.wait(self.config.interval)
        logger.info("Shutting down")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() == 'true'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Update running containers when their images change'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('RUM_CONFIG'),
        help='Optional JSON configuration file (env: RUM_CONFIG)'
    )
    parser.add_argument(
        '--interval',
        type=int,
        default=None,
        help=f'Check interval in seconds (env: RUM_INTERVAL, default: {DEFAULT_INTERVAL})'
    )
    parser.add_argument(
        '--allow-major',
        action='store_true',
        default=None,
        help='Allow major version upgrades (env: RUM_ALLOW_MAJOR_UPGRADE)'
    )
    parser.add_argument(
        '--socket',
        default=None,
        help=f'Docker socket path (env: RUM_DOCKER_SOCKET, default: {DOCKER_SOCKET_PATH})'
    )
    parser.add_argument(
        '--log-level',
        type=str.upper,
        choices=LOG_LEVELS,
        default=None,
        help='Logging level (env: RUM_LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        default=None,
        help='Run a single pass and exit (env: RUM_RUN_ONCE)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=None,
        help='Show what would be updated without changing anything (env: RUM_DRY_RUN)'
    )
    parser.add_argument(
        '--container',
        dest='container_names',
        action='append',
        default=None,
        help='Only check this container; repeat for several (env: RUM_CONTAINERS, comma separated)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def load_config(argv: Optional[List[str]] = None) -> RumConfig:
    """Defaults, then the config file, then RUM_* variables, then flags."""
    args = build_parser().parse_args(argv)

    config = RumConfig.from_file(args.config) if args.config else RumConfig()

    env = os.environ
    if env.get('RUM_INTERVAL'):
        config.interval = int(env['RUM_INTERVAL'])
    if env.get('RUM_DOCKER_SOCKET'):
        config.docker_socket = env['RUM_DOCKER_SOCKET']
    if env.get('RUM_LOG_LEVEL'):
        config.log_level = env['RUM_LOG_LEVEL'].upper()
    if env.get('RUM_CONTAINERS'):
        config.container_names = [n.strip() for n in env['RUM_CONTAINERS'].split(',') if n.strip()]
    config.allow_major_upgrade = config.allow_major_upgrade or _env_flag('RUM_ALLOW_MAJOR_UPGRADE')
    config.run_once = config.run_once or _env_flag('RUM_RUN_ONCE')
    config.dry_run = config.dry_run or _env_flag('RUM_DRY_RUN')

    if args.interval is not None:
        config.interval = args.interval
    if args.socket is not None:
        config.docker_socket = args.socket
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.container_names:
        config.container_names = args.container_names
    if args.allow_major:
        config.allow_major_upgrade = True
    if args.once:
        config.run_once = True
    if args.dry_run:
        config.dry_run = True

    config.log_level = config.log_level.upper()
    config.validate()
    return config


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config = load_config(argv)
    except FileNotFoundError as e:
        logging.error(f"Config file not found: {e.filename}")
        return 1
    except json.JSONDecodeError as e:
        logging.error(f"Error parsing config file: {e}")
        return 1
    except jsonschema.ValidationError as e:
        logging.error(f"Configuration validation failed: {e.message}")
        return 1
    except ValueError as e:
        logging.error(str(e))
        return 1

    setup_logging(config.log_level)
    logger.info(f"rum {__version__} starting: {config.describe()}")

    engine = ContainerEngineClient(config.docker_socket)
    orchestrator = UpdateOrchestrator(engine, RegistryClient())

    try:
        if config.dry_run:
            log_dry_run_results(orchestrator.dry_run(config.allow_major_upgrade, config.container_names))
        elif config.run_once:
            log_update_results(orchestrator.check_and_update(
                config.allow_major_upgrade, config.container_names))
        else:
            daemon = Daemon(orchestrator, config)
            daemon.install_signal_handlers()
            daemon.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1
    finally:
        engine.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
