"""Shared fixtures for duc tests."""

import logging

import pytest

from docker_api import DockerAPIError
from duc import RunContext

# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64
DIGEST_C = "sha256:" + "0123456789abcdef" * 4


class FakeBackend:
    """In-memory stand-in for DockerClient / DockerCLI.

    ``local`` maps image refs to RepoDigests lists, ``remote`` maps refs to
    manifest digests.  A missing key behaves like a 404 from the daemon; an
    exception instance as value is raised.
    """

    mode = "api"

    def __init__(self, containers=(), local=None, remote=None, ping_error=None):
        self.containers = list(containers)
        self.local = local or {}
        self.remote = remote or {}
        self.ping_error = ping_error
        self.local_calls = []
        self.remote_calls = []
        self.list_calls = 0

    def ping(self):
        if self.ping_error is not None:
            raise self.ping_error
        return "24.0.7"

    def running_containers(self):
        self.list_calls += 1
        return list(self.containers)

    def _lookup(self, table, ref):
        if ref not in table:
            raise DockerAPIError(404, f"No such image: {ref}")
        value = table[ref]
        if isinstance(value, Exception):
            raise value
        return value

    def repo_digests(self, ref):
        self.local_calls.append(ref)
        return self._lookup(self.local, ref)

    def manifest_digest(self, ref):
        self.remote_calls.append(ref)
        return self._lookup(self.remote, ref)


class StaticStrategy:
    """Remote lookup strategy returning a fixed value or raising an error."""

    def __init__(self, name, result):
        self.name = name
        self.result = result
        self.calls = []

    def lookup(self, ref):
        self.calls.append(ref)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def ctx(backend):
    return RunContext(backend, "api")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host settings out of the tests."""
    for name in ("TRACE", "LOG_LEVEL", "CONFIG_FILE", "CHECK_TIMEOUT",
                 "CHECK_WORKERS", "DOCKER_HOST"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_loggers():
    """Drop handlers bound to a captured stderr of a previous test."""
    yield
    for name in ("duc", "docker_api", "registry"):
        log = logging.getLogger(name)
        for handler in list(log.handlers):
            log.removeHandler(handler)
