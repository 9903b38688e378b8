"""Remote digest lookups that bypass the container runtime.

``SkopeoHelper`` delegates to the external ``skopeo`` binary when it is
installed.  ``RegistryClient`` queries the Registry HTTP API v2 directly
with an anonymous pull token; it is only used when enabled in config.
"""

import logging
import shutil
import subprocess
from typing import Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_AUTH_URL = "https://auth.docker.io/token"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
REQUEST_TIMEOUT = 30
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.oci.image.manifest.v1+json"
)
DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry-1.docker.io")


def parse_image_reference(image: str) -> Tuple[str, str, str, str]:
    """
    Split an image reference into registry, namespace, repository and tag.

    Args:
        image: Image reference (e.g., 'ubuntu:22.04', 'linuxserver/calibre:latest',
               'ghcr.io/org/app:v1')

    Returns:
        Tuple of (registry, namespace, repository, tag).  ``repository`` may
        itself contain slashes for nested paths.  A digest suffix is kept
        as the "tag" so that ``manifests/<digest>`` lookups work.
    """
    digest = None
    at_pos = image.find('@')
    if at_pos != -1:
        image, digest = image[:at_pos], image[at_pos + 1:]

    reference = DEFAULT_TAG
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        image, reference = image[:last_colon], image[last_colon + 1:]
    # A pinned digest takes precedence over the tag
    reference = digest or reference

    parts = image.split('/', 1)
    first_part = parts[0]

    # Registry indicators: contains '.', is localhost, or has port ':'
    if len(parts) > 1 and ('.' in first_part or first_part == 'localhost' or ':' in first_part):
        registry = first_part
        remaining = parts[1]
    else:
        registry = DEFAULT_REGISTRY
        remaining = image

    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY

    if '/' in remaining:
        namespace, repo = remaining.split('/', 1)
    elif registry == DEFAULT_REGISTRY:
        namespace = DEFAULT_NAMESPACE
        repo = remaining
    else:
        # Private registries have no implicit namespace
        namespace = ''
        repo = remaining

    return registry, namespace, repo, reference


def repository_path(namespace: str, repo: str) -> str:
    return f"{namespace}/{repo}" if namespace else repo


class SkopeoHelper:
    """Wrapper around ``skopeo inspect`` that extracts a single digest field."""

    name = "skopeo"

    def __init__(self, binary: str = "skopeo", timeout: float = REQUEST_TIMEOUT):
        self.binary = binary
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def lookup(self, ref: str) -> Optional[str]:
        if not self.available():
            raise FileNotFoundError(f"{self.binary} not installed")
        result = subprocess.run(
            [self.binary, "inspect", "--no-tags", "--format", "{{.Digest}}", f"docker://{ref}"],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise ValueError(f"{self.binary} exited {result.returncode}: {(result.stderr or '').strip()}")
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        # Exactly one digest line is accepted; anything else is rejected
        if len(lines) != 1:
            raise ValueError(f"unexpected {self.binary} output: {result.stdout.strip()!r}")
        return lines[0]


class RegistryClient:
    """Anonymous Registry HTTP API v2 client for manifest digests."""

    name = "registry"

    def __init__(self, timeout: float = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_token(self, registry: str, namespace: str, repo: str) -> Optional[str]:
        """
        Get an anonymous pull token for a repository.

        Returns:
            Token string, or None when the registry does not hand one out
        """
        scope = f"repository:{repository_path(namespace, repo)}:pull"
        if registry == DEFAULT_REGISTRY:
            auth_url = f"{DEFAULT_AUTH_URL}?service=registry.docker.io&scope={scope}"
        elif registry in ("ghcr.io", "lscr.io"):
            # lscr.io delegates auth to ghcr.io
            auth_url = f"https://ghcr.io/token?service=ghcr.io&scope={scope}"
        else:
            auth_url = f"https://{registry}/v2/auth?service={registry}&scope={scope}"

        try:
            response = self.session.get(auth_url, timeout=self.timeout)
            response.raise_for_status()
            return response.json().get('token')
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"No token for {registry}/{repository_path(namespace, repo)}: {e}")
            return None

    def lookup(self, ref: str) -> Optional[str]:
        """Return the ``Docker-Content-Digest`` of the manifest for ``ref``.

        Uses a HEAD request, so the digest is that of the manifest list for
        multi-arch images, which is what the runtime records on pull.
        """
        registry, namespace, repo, reference = parse_image_reference(ref)
        token = self._get_token(registry, namespace, repo)

        headers = {'Accept': MANIFEST_ACCEPT_HEADER}
        if token:
            headers['Authorization'] = f'Bearer {token}'

        manifest_url = f"https://{registry}/v2/{repository_path(namespace, repo)}/manifests/{reference}"
        response = self.session.head(manifest_url, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.headers.get('Docker-Content-Digest')
