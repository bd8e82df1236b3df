"""Docker Registry HTTP API v2 client.

Resolves image references to a registry host and repository path, fetches
tag lists and manifest digests, and keeps bearer tokens in a short-lived
cache so that a pass over many containers does not re-authenticate for
every request.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol, Tuple

import requests

from _version import __version__

logger = logging.getLogger(__name__)

# Constants
DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_NAMESPACE = "library"
REQUEST_TIMEOUT = 30
TOKEN_TTL_SECONDS = 4 * 60  # registries issue ~5 minute tokens
USER_AGENT = f"rum/{__version__}"
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.oci.image.manifest.v1+json"
)
TOKEN_URL_TEMPLATES = {
    DEFAULT_REGISTRY: (
        "https://auth.docker.io/token?service=registry.docker.io"
        "&scope=repository:{repo}:pull"
    ),
    "ghcr.io": "https://ghcr.io/token?scope=repository:{repo}:pull",
}
REGISTRY_ALIASES = {
    "docker.io": DEFAULT_REGISTRY,
    "index.docker.io": DEFAULT_REGISTRY,
}
VANITY_REGISTRIES = {
    # lscr.io redirects to the linuxserver namespace on ghcr.io
    "lscr.io": ("ghcr.io", "linuxserver/"),
}


# ---------------------------------------------------------------------------
# Image reference handling
# ---------------------------------------------------------------------------

class ImageReference(NamedTuple):
    name: str
    tag: Optional[str]
    digest: Optional[str]


class RegistryLocation(NamedTuple):
    host: str
    repository_path: str


def split_image_ref(image: str) -> ImageReference:
    """Split ``[registry/]name[:tag][@digest]`` into its parts.

    A colon only counts as a tag separator when it comes after the last
    slash, so ``localhost:5000/app`` keeps its port.
    """
    digest = None
    at_pos = image.find('@')
    if at_pos != -1:
        image, digest = image[:at_pos], image[at_pos + 1:]

    tag = None
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        image, tag = image[:last_colon], image[last_colon + 1:]

    return ImageReference(image, tag or None, digest or None)


def is_digest_reference(image: str) -> bool:
    """True for image ids and references pinned by content digest."""
    return image.startswith('sha256:') or split_image_ref(image).digest is not None


def resolve(image: str) -> RegistryLocation:
    """Map an image reference to the registry host and repository path it lives at."""
    name = split_image_ref(image).name
    parts = name.split('/')
    first = parts[0]

    if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
        host = REGISTRY_ALIASES.get(first, first)
        repository_path = '/'.join(parts[1:])
    else:
        host = DEFAULT_REGISTRY
        repository_path = name

    if host == DEFAULT_REGISTRY and '/' not in repository_path:
        repository_path = f"{DEFAULT_NAMESPACE}/{repository_path}"

    if host in VANITY_REGISTRIES:
        host, prefix = VANITY_REGISTRIES[host]
        # Already-qualified references must not get the prefix twice
        if not repository_path.startswith(prefix):
            repository_path = prefix + repository_path

    return RegistryLocation(host, repository_path)


def normalize_digest(digest: str) -> str:
    """Give a bare hex digest the ``sha256:`` prefix so digests compare equal."""
    return digest if digest.startswith('sha256:') else f"sha256:{digest}"


def find_digest_in_json(node: Any) -> Optional[str]:
    """Depth-first search for the first string field named ``digest``."""
    if isinstance(node, dict):
        value = node.get('digest')
        if isinstance(value, str):
            return value
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None

    for child in children:
        found = find_digest_in_json(child)
        if found:
            return found
    return None


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenEntry:
    token: str
    expires_at: float


class TokenCache:
    """Bearer tokens keyed by (registry host, repository path).

    Entries are replaced whole and treated as absent once expired.  Callers
    read, check and write without locking; two concurrent misses only cost a
    redundant token fetch.
    """

    def __init__(self, ttl_seconds: float = TOKEN_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], TokenEntry] = {}

    def get(self, host: str, repository_path: str) -> Optional[str]:
        key = (host, repository_path)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.token

    def put(self, host: str, repository_path: str, token: str) -> None:
        self._entries[(host, repository_path)] = TokenEntry(token, self._clock() + self._ttl)

    def expire(self, host: str, repository_path: str) -> None:
        self._entries.pop((host, repository_path), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Registry client
# ---------------------------------------------------------------------------

class RegistryAPI(Protocol):
    """Registry capabilities the update detector depends on."""

    def list_tags(self, host: str, repository_path: str) -> List[str]: ...

    def fetch_manifest_digest(self, host: str, repository_path: str, tag: str) -> Optional[str]: ...

    def get_token(self, host: str, repository_path: str) -> Optional[str]: ...


class RegistryClient:
    """Registry API v2 client with bearer-token authentication."""

    def __init__(self, token_cache: Optional[TokenCache] = None,
                 session: Optional[requests.Session] = None):
        self.token_cache = token_cache if token_cache is not None else TokenCache()
        self._session = session or requests.Session()
        self._session.headers['User-Agent'] = USER_AGENT

    def _headers(self, host: str, repository_path: str,
                 extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(extra or {})
        token = self.get_token(host, repository_path)
        if token:
            logger.debug(f"Using authenticated request for {host}/{repository_path}")
            headers['Authorization'] = f'Bearer {token}'
        else:
            logger.debug(f"Using unauthenticated request for {host}/{repository_path}")
        return headers

    def get_token(self, host: str, repository_path: str) -> Optional[str]:
        """
        Get a pull token for a repository, from cache when still valid.

        Args:
            host: Registry hostname
            repository_path: Repository path on that registry

        Returns:
            Bearer token, or None to fall back to unauthenticated access
        """
        cached = self.token_cache.get(host, repository_path)
        if cached:
            return cached

        template = TOKEN_URL_TEMPLATES.get(host)
        if template is None:
            logger.debug(f"No token endpoint known for {host}, using anonymous access")
            return None

        auth_url = template.format(repo=repository_path)
        try:
            response = self._session.get(auth_url, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            token = response.json().get('token')
        except requests.RequestException as e:
            logger.error(f"Error getting token for {host}/{repository_path}: {e}")
            return None
        except (ValueError, AttributeError) as e:
            logger.error(f"Error parsing token response from {host}: {e}")
            return None

        if not token:
            logger.warning(f"Token response from {host} did not contain a token")
            return None

        self.token_cache.put(host, repository_path, token)
        logger.debug(f"Cached token for {host}/{repository_path}")
        return token

    def list_tags(self, host: str, repository_path: str) -> List[str]:
        """
        Get all available tags for a repository.

        Returns:
            List of tags; empty when the registry cannot be reached or refuses
        """
        tags_url = f"https://{host}/v2/{repository_path}/tags/list"

        try:
            response = self._session.get(tags_url, headers=self._headers(host, repository_path),
                                         timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            logger.error(f"Network error fetching tags from {host}/{repository_path}: {e}")
            return []

        if response.status_code != 200:
            logger.error(f"Registry returned status {response.status_code} fetching tags "
                         f"for {host}/{repository_path}")
            if response.status_code == 404:
                logger.error(f"Repository not found or not public. Expected path: {repository_path} "
                             f"(URL: {tags_url})")
            return []

        try:
            tags = response.json().get('tags') or []
        except (ValueError, AttributeError) as e:
            logger.error(f"Error parsing tag list for {host}/{repository_path}: {e}")
            return []

        return [t for t in tags if isinstance(t, str)]

    def fetch_manifest_digest(self, host: str, repository_path: str, tag: str) -> Optional[str]:
        """
        Get the content digest a tag currently points to.

        The ``Docker-Content-Digest`` header is preferred, since for
        multi-arch images it identifies the manifest list itself.  Registries
        that omit the header get their manifest body searched instead.
        """
        manifest_url = f"https://{host}/v2/{repository_path}/manifests/{tag}"
        headers = self._headers(host, repository_path, {'Accept': MANIFEST_ACCEPT_HEADER})

        try:
            response = self._session.get(manifest_url, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            logger.error(f"Network error getting manifest for {host}/{repository_path}:{tag}: {e}")
            return None

        if response.status_code != 200:
            logger.error(f"Registry returned status {response.status_code} "
                         f"for {host}/{repository_path}:{tag}")
            return None

        digest = response.headers.get('Docker-Content-Digest')
        if digest:
            return digest

        logger.debug(f"No digest header for {host}/{repository_path}:{tag}, searching manifest body")
        try:
            digest = find_digest_in_json(response.json())
        except ValueError as e:
            logger.error(f"Error parsing manifest for {host}/{repository_path}:{tag}: {e}")
            return None

        if not digest:
            logger.error(f"No digest found for {host}/{repository_path}:{tag}")
        return digest

