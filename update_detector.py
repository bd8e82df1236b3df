"""Decide whether a container's image has a newer release in its registry.

Two strategies, chosen by the shape of the image tag:

* ``latest``-style tags (or no tag at all) compare the content digest of the
  local image with the digest the registry currently serves for the tag.
* version tags (``1.2.3``, ``v2.1``) list the registry's tags and pick the
  highest newer semantic version, optionally staying within the current
  major version.

Images pinned by digest never report an update.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import version_utils
from engine_client import ContainerInfo, EngineAPI
from registry_client import (RegistryAPI, is_digest_reference, normalize_digest,
                             resolve, split_image_ref)
from version_utils import Version

logger = logging.getLogger(__name__)

# Upper bound on manifest requests spent recovering a tag name from a digest
REVERSE_LOOKUP_LIMIT = 20


@dataclass(frozen=True)
class UpdateDecision:
    """Outcome of an update check for one image."""
    has_update: bool
    local_version: Optional[Version] = None
    remote_version: Optional[Version] = None
    remote_tag: Optional[str] = None
    reason: Optional[str] = None
    local_digest: Optional[str] = None
    remote_digest: Optional[str] = None
    needs_pull: bool = False
    needs_restart: bool = False

    def to_report(self) -> Dict[str, Any]:
        return {
            'hasUpdate': self.has_update,
            'localVersion': str(self.local_version) if self.local_version else None,
            'remoteVersion': str(self.remote_version) if self.remote_version else None,
        }


def _short_digest(digest: str) -> str:
    return normalize_digest(digest)[len('sha256:'):][:12]


class UpdateDetector:
    def __init__(self, engine: EngineAPI, registry: RegistryAPI,
                 reverse_lookup_limit: int = REVERSE_LOOKUP_LIMIT):
        self.engine = engine
        self.registry = registry
        self.reverse_lookup_limit = reverse_lookup_limit

    # -- tag shape ---------------------------------------------------------

    @staticmethod
    def is_latest_tag(image: str) -> bool:
        """True for references tracked by digest rather than by version."""
        if is_digest_reference(image):
            return False
        tag = split_image_ref(image).tag
        return tag is None or 'latest' in tag

    @staticmethod
    def extract_version(image: str) -> Optional[Version]:
        """Version encoded in an image's tag; digest references never have one."""
        if is_digest_reference(image):
            return None
        return version_utils.parse(split_image_ref(image).tag or 'latest')

    # -- digests -----------------------------------------------------------

    def get_local_digest(self, image: str) -> Optional[str]:
        """Repo digest recorded at pull time, else the local image id."""
        info = self.engine.get_image_info(image)
        if info is None:
            return None
        digest = info.repo_digest_for(image)
        if digest:
            logger.debug(f"Local repo digest for {image}: {digest}")
            return digest
        logger.debug(f"No repo digest for {image}, falling back to image id {info.id}")
        return info.id or None

    def get_remote_digest(self, image: str) -> Optional[str]:
        if is_digest_reference(image):
            return None
        location = resolve(image)
        tag = split_image_ref(image).tag or 'latest'
        return self.registry.fetch_manifest_digest(location.host, location.repository_path, tag)

    def get_update_status(self, container: ContainerInfo) -> UpdateDecision:
        """
        Digest comparison for a container on a latest-style tag.

        ``needs_pull`` means the registry serves different content than the
        local image.  ``needs_restart`` means the local image is current but
        the container still runs an older image id, i.e. a pull already
        happened and the container has not picked it up.
        """
        image = container.image
        local_info = self.engine.get_image_info(image)
        local_digest = None
        if local_info is not None:
            local_digest = local_info.repo_digest_for(image) or local_info.id or None
        remote_digest = self.get_remote_digest(image)

        needs_pull = needs_restart = False
        if local_digest and remote_digest:
            needs_pull = normalize_digest(local_digest) != normalize_digest(remote_digest)
            if not needs_pull and container.image_id and local_info.id:
                needs_restart = normalize_digest(container.image_id) != normalize_digest(local_info.id)

        logger.debug(f"Update status for {container.name}: local={local_digest} "
                     f"remote={remote_digest} needs_pull={needs_pull} needs_restart={needs_restart}")

        return UpdateDecision(
            has_update=needs_pull or needs_restart,
            local_digest=local_digest,
            remote_digest=remote_digest,
            needs_pull=needs_pull,
            needs_restart=needs_restart,
        )

    def image_has_update(self, image: str) -> UpdateDecision:
        local_digest = self.get_local_digest(image)
        remote_digest = self.get_remote_digest(image) if local_digest else None
        has_update = bool(local_digest and remote_digest and
                          normalize_digest(local_digest) != normalize_digest(remote_digest))
        return UpdateDecision(has_update=has_update, local_digest=local_digest,
                              remote_digest=remote_digest, needs_pull=has_update)

    # -- versions ----------------------------------------------------------

    def get_version_tags(self, image: str) -> List[Tuple[Version, str]]:
        """(version, tag) for every parseable tag of the image's repository, ascending."""
        location = resolve(image)
        tags = self.registry.list_tags(location.host, location.repository_path)
        parsed = [(version_utils.parse(t), t) for t in tags]
        return sorted(((v, t) for v, t in parsed if v is not None), key=lambda pair: pair[0])

    def get_all_versions(self, image: str) -> List[Version]:
        return [v for v, _ in self.get_version_tags(image)]

    def select_target(self, image: str, current: Version,
                      allow_major_upgrade: bool) -> Optional[Tuple[Version, str]]:
        """Highest newer (version, tag) pair, within the current major unless allowed."""
        candidates = [(v, t) for v, t in self.get_version_tags(image) if v > current]
        if not allow_major_upgrade:
            candidates = [(v, t) for v, t in candidates
                          if not version_utils.major_upgrade(current, v)]
        if not candidates:
            return None
        return max(candidates, key=lambda pair: pair[0])

    def find_target_version(self, image: str, current: Version,
                            allow_major_upgrade: bool) -> Optional[Version]:
        target = self.select_target(image, current, allow_major_upgrade)
        return target[0] if target else None

    def find_tag_for_digest(self, image: str, digest: str) -> Optional[str]:
        """Recover a tag name for a local digest by asking the registry.

        Version tags are tried newest first; the search stops after
        ``reverse_lookup_limit`` manifest requests.
        """
        location = resolve(image)
        wanted = normalize_digest(digest)
        newest_first = list(reversed(self.get_version_tags(image)))
        for _, tag in newest_first[:self.reverse_lookup_limit]:
            remote = self.registry.fetch_manifest_digest(location.host, location.repository_path, tag)
            if remote and normalize_digest(remote) == wanted:
                logger.debug(f"Digest {_short_digest(digest)} of {image} matches tag {tag}")
                return tag
        return None

    def _versioned_decision(self, image: str, allow_major_upgrade: bool) -> UpdateDecision:
        current = self.extract_version(image)
        if current is None:
            logger.debug(f"No version in tag of {image}, no update reported")
            return UpdateDecision(has_update=False)

        target = self.select_target(image, current, allow_major_upgrade)
        if target is None:
            return UpdateDecision(has_update=False, local_version=current)
        logger.debug(f"{image}: {current} -> {target[0]} (tag {target[1]})")
        return UpdateDecision(has_update=True, local_version=current,
                              remote_version=target[0], remote_tag=target[1])

    # -- public entry points ----------------------------------------------

    def evaluate(self, container: ContainerInfo, allow_major_upgrade: bool = False) -> UpdateDecision:
        """Full update decision for one container."""
        image = container.image
        if is_digest_reference(image):
            logger.debug(f"{container.name} is pinned by digest, skipping")
            return UpdateDecision(has_update=False)
        if self.is_latest_tag(image):
            return self.get_update_status(container)
        return self._versioned_decision(image, allow_major_upgrade)

    def needs_update(self, container: ContainerInfo, allow_major_upgrade: bool = False) -> bool:
        return self.evaluate(container, allow_major_upgrade).has_update

    def get_update_info(self, image: str, allow_major_upgrade: bool = True) -> UpdateDecision:
        """Update decision for an image reference without a running container."""
        if is_digest_reference(image):
            return UpdateDecision(has_update=False)
        if self.is_latest_tag(image):
            return self.image_has_update(image)
        return self._versioned_decision(image, allow_major_upgrade)

    def build_reason(self, container: ContainerInfo, decision: UpdateDecision) -> str:
        """Human-readable explanation of an update; never blank."""
        image = container.image
        if decision.local_version and decision.remote_version:
            return f"Version update available: {decision.local_version} -> {decision.remote_version}"
        if decision.needs_restart and not decision.needs_pull:
            return "Newer image already pulled; container restart required"
        if decision.local_version:
            return f"Update available for {image} (current: {decision.local_version})"
        if decision.local_digest:
            tag = self.find_tag_for_digest(image, decision.local_digest)
            if tag:
                return f"Update available for {image} (current: {tag})"
            if decision.remote_digest:
                return (f"Image digest differs ({_short_digest(decision.local_digest)} -> "
                        f"{_short_digest(decision.remote_digest)})")
        if container.image_id:
            return f"Update available for {image} (image {_short_digest(container.image_id)})"
        return f"Update available for {image}"
