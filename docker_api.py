"""Container runtime backends.

Two interchangeable clients expose the same small query surface used by
the update check:

* ``DockerClient`` talks to the Docker Engine API over the Unix socket.
* ``DockerCLI`` shells out to the ``docker`` binary, optionally through
  ``sudo -n`` for hosts where the monitoring user has no socket access.

Every call is read-only.  Nothing here pulls images or touches containers.
"""

import http.client
import json
import logging
import os
import re
import socket
import subprocess
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Docker Engine API version — compatible with Docker 20.10+
API_VERSION = "v1.41"
DEFAULT_SOCKET = "/var/run/docker.sock"
DEFAULT_TIMEOUT = 30
# Image column once the container's tag has moved on to a newer image
IMAGE_ID_PATTERN = re.compile(r"sha256:[0-9a-f]{64}")


class DockerAPIError(Exception):
    """Error from the container runtime (HTTP status or process exit code)."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: float = DEFAULT_TIMEOUT):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def socket_path_from_env() -> Optional[str]:
    """Socket path from ``DOCKER_HOST``, else the default.

    Returns None when ``DOCKER_HOST`` names a non-socket daemon
    (``tcp://``, ``ssh://``): the Engine API client only speaks to Unix
    sockets, and falling back to the default socket would query another
    daemon than the ``docker`` CLI does.
    """
    host = os.environ.get("DOCKER_HOST", "")
    if host.startswith("unix://"):
        return host[len("unix://"):]
    if host:
        logger.debug(f"DOCKER_HOST {host} is not a unix socket, API access disabled")
        return None
    return DEFAULT_SOCKET


class DockerClient:
    """Client for the Docker Engine API over Unix socket."""

    mode = "api"

    def __init__(self, socket_path: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self._socket_path = socket_path or socket_path_from_env()
        self.timeout = timeout

    def _request(self, method: str, path: str,
                 query: Optional[Dict[str, str]] = None) -> Any:
        """Send an HTTP request to the Docker Engine API.

        Creates a fresh connection per call (Docker socket is local so
        the overhead is negligible and it keeps threads independent).
        Returns parsed JSON, or None for an empty body.
        """
        if self._socket_path is None:
            raise DockerAPIError(0, f"DOCKER_HOST {os.environ.get('DOCKER_HOST')} is not a unix socket")

        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        conn = UnixHTTPConnection(self._socket_path, timeout=self.timeout)
        try:
            conn.request(method, url)
            response = conn.getresponse()
            raw = response.read().decode("utf-8", errors="replace")

            if response.status >= 400:
                # Try to extract message from JSON error body
                try:
                    err = json.loads(raw)
                    msg = err.get("message", raw)
                except (json.JSONDecodeError, AttributeError):
                    msg = raw
                raise DockerAPIError(response.status, msg.strip())

            if not raw:
                return None

            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                raise DockerAPIError(response.status, f"Invalid JSON response for {path}")
        finally:
            conn.close()

    @staticmethod
    def _quote(ref: str) -> str:
        # Slashes and the tag/digest separators are part of the route
        return urllib.parse.quote(ref, safe="/:@")

    def ping(self) -> str:
        """Check daemon access.  Returns the server version."""
        info = self._request("GET", "/version") or {}
        return info.get("Version", "unknown")

    def running_containers(self) -> List[Tuple[str, str]]:
        """List running containers as ``(name, image)`` pairs.

        API returns Names as list with "/" prefix, e.g. ["/sonarr"].
        Entries missing a name or image are skipped.  An image ID in the
        Image field is replaced by the reference the container was
        created from.
        """
        result = self._request("GET", "/containers/json") or []
        containers = []
        for entry in result:
            names = entry.get("Names") or []
            image = entry.get("Image") or ""
            name = names[0].lstrip("/") if names else ""
            if not name or not image:
                logger.debug(f"Skipping malformed container entry: {entry.get('Id', '?')}")
                continue
            if IMAGE_ID_PATTERN.fullmatch(image):
                image = self._configured_image(entry.get("Id") or name, image)
            containers.append((name, image))
        return containers

    def _configured_image(self, container_id: str, image: str) -> str:
        try:
            info = self._request("GET", f"/containers/{container_id}/json") or {}
        except DockerAPIError as e:
            logger.debug(f"Could not inspect container {container_id}: {e}")
            return image
        return (info.get("Config") or {}).get("Image") or image

    def repo_digests(self, ref: str) -> List[str]:
        """Return the ``RepoDigests`` recorded for a local image."""
        info = self._request("GET", f"/images/{self._quote(ref)}/json") or {}
        return list(info.get("RepoDigests") or [])

    def manifest_digest(self, ref: str) -> Optional[str]:
        """Ask the daemon for the registry manifest digest, without pulling.

        Uses the distribution endpoint, which only fetches the manifest.
        """
        info = self._request("GET", f"/distribution/{self._quote(ref)}/json") or {}
        return (info.get("Descriptor") or {}).get("digest")


class DockerCLI:
    """Client driving the ``docker`` command line.

    With ``sudo=True`` every command runs as ``sudo -n docker ...``; the
    ``-n`` flag makes sudo fail instead of prompting for a password.
    """

    def __init__(self, sudo: bool = False, binary: str = "docker",
                 timeout: float = DEFAULT_TIMEOUT):
        self.sudo = sudo
        self.binary = binary
        self.timeout = timeout

    @property
    def mode(self) -> str:
        return "sudo" if self.sudo else "cli"

    def _command(self, args: List[str]) -> List[str]:
        prefix = ["sudo", "-n", self.binary] if self.sudo else [self.binary]
        return prefix + args

    def _run(self, args: List[str]) -> str:
        """Run a docker command and return its stdout.

        Raises DockerAPIError on a non-zero exit; ``subprocess.TimeoutExpired``
        and ``OSError`` (binary missing) propagate to the caller.
        """
        cmd = self._command(args)
        logger.debug(f"Running: {' '.join(cmd)}")
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise DockerAPIError(result.returncode, (result.stderr or "").strip())
        return result.stdout

    def ping(self) -> str:
        return self._run(["version", "--format", "{{.Server.Version}}"]).strip()

    def running_containers(self) -> List[Tuple[str, str]]:
        output = self._run(["ps", "--no-trunc", "--format", "{{.ID}}\t{{.Names}}\t{{.Image}}"])
        containers = []
        for line in output.splitlines():
            if not line.strip():
                continue
            fields = [f.strip() for f in line.split("\t")]
            if len(fields) != 3 or not all(fields):
                logger.debug(f"Skipping malformed container line: {line!r}")
                continue
            container_id, names, image = fields
            # Linked containers list several comma-separated names
            name = names.split(",")[0].strip()
            if IMAGE_ID_PATTERN.fullmatch(image):
                image = self._configured_image(container_id, image)
            containers.append((name, image))
        return containers

    def _configured_image(self, container_id: str, image: str) -> str:
        try:
            configured = self._run(["inspect", "--format", "{{.Config.Image}}", container_id]).strip()
        except DockerAPIError as e:
            logger.debug(f"Could not inspect container {container_id}: {e}")
            return image
        return configured or image

    def repo_digests(self, ref: str) -> List[str]:
        output = self._run(["image", "inspect", "--format", "{{json .RepoDigests}}", ref])
        try:
            digests = json.loads(output.strip() or "null")
        except json.JSONDecodeError:
            raise DockerAPIError(0, f"Unparsable RepoDigests for {ref}: {output.strip()!r}")
        return [d for d in digests or [] if isinstance(d, str)]

    def manifest_digest(self, ref: str) -> Optional[str]:
        output = self._run(
            ["buildx", "imagetools", "inspect", "--format", "{{json .Manifest}}", ref]
        )
        try:
            manifest = json.loads(output.strip() or "null")
        except json.JSONDecodeError:
            raise DockerAPIError(0, f"Unparsable manifest for {ref}: {output.strip()!r}")
        if not isinstance(manifest, dict):
            return None
        return manifest.get("digest")


def make_backend(mode: str, socket_path: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT):
    """Build the backend client for an invocation mode (api, cli or sudo)."""
    if mode == "api":
        return DockerClient(socket_path, timeout=timeout)
    if mode == "cli":
        return DockerCLI(sudo=False, timeout=timeout)
    if mode == "sudo":
        return DockerCLI(sudo=True, timeout=timeout)
    raise ValueError(f"Unknown invocation mode: {mode}")
