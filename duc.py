#!/usr/bin/env python3
"""
Docker Update Check

Monitoring plugin (Nagios-style) reporting whether the images used by
running containers have a newer version in their registry.  For every
unique image it compares the repo-digest recorded at pull time with the
digest of the manifest currently published under the same tag.  Nothing
is pulled and no container is touched.

Stdout carries one status line (OK / WARNING / CRITICAL) plus the list of
stale containers; progress narration goes to stderr.  Set TRACE=1 for
debug output.
"""

__version__ = "1.0.0"

import argparse
import http.client
import json
import logging
import os
import re
import subprocess
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonschema
import requests

from docker_api import DockerAPIError, make_backend
from registry import RegistryClient, SkopeoHelper


# Constants
DEFAULT_TAG = "latest"
DEFAULT_TIMEOUT = 30
DEFAULT_MODES = ["api", "cli", "sudo"]
INVOCATION_MODES = ("api", "cli", "sudo")
DIGEST_PATTERN = re.compile(r"sha256:[0-9a-fA-F]{64}")
# First path segment looks like a host: a dot followed by at least two letters
REGISTRY_HOST_PATTERN = re.compile(r"^[^/]*\.[a-zA-Z]{2,}")
DOCKER_HUB_PREFIXES = ("docker.io/", "index.docker.io/", "registry-1.docker.io/")

# Failures a single backend call or lookup strategy may raise.  Anything
# else propagates to main().
LOOKUP_ERRORS = (
    DockerAPIError,
    http.client.HTTPException,
    OSError,
    subprocess.SubprocessError,
    requests.RequestException,
    ValueError,
)

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "timeout": {"type": "number", "exclusiveMinimum": 0},
        "workers": {"type": "integer", "minimum": 1},
        "socket": {"type": "string", "minLength": 1},
        "modes": {
            "type": "array",
            "items": {"type": "string", "enum": list(INVOCATION_MODES)},
            "minItems": 1,
            "uniqueItems": True
        },
        "helper": {"type": "string", "minLength": 1},
        "registry_fallback": {"type": "boolean"}
    },
    "additionalProperties": False
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "timeout": DEFAULT_TIMEOUT,
    "workers": 1,
    "socket": None,
    "modes": list(DEFAULT_MODES),
    "helper": "skopeo",
    "registry_fallback": False,
}

logger = logging.getLogger('duc')


class ConfigError(Exception):
    """Invalid configuration file, environment value or flag."""


class BackendUnreachable(Exception):
    """No invocation mode gives access to the container runtime."""

    def __init__(self, reasons: Dict[str, str]):
        self.reasons = reasons
        detail = "; ".join(f"{mode}: {reason}" for mode, reason in reasons.items())
        super().__init__(f"Cannot access Docker daemon ({detail or 'no modes tried'})")


class Status(Enum):
    OK = 0
    WARNING = 1
    CRITICAL = 2

    @property
    def exit_code(self) -> int:
        return self.value


class Verdict(Enum):
    FRESH = "fresh"
    STALE = "stale"
    UNKNOWN = "unknown"


class DigestSource(Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class ContainerRecord:
    name: str
    raw_image: str


@dataclass
class DigestResult:
    """Outcome of a local or remote digest lookup.

    ``resolved`` is False when no strategy produced a well-formed digest;
    ``reasons`` then explains each failed attempt.
    """
    source: DigestSource
    value: Optional[str] = None
    resolved: bool = False
    strategy: Optional[str] = None
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ImageVerdict:
    image: str
    status: Verdict
    container: str
    local_digest: Optional[str] = None
    remote_digest: Optional[str] = None


@dataclass(frozen=True)
class RunReport:
    total_containers: int
    update_count: int
    failed_count: int
    stale_images: Tuple[Tuple[str, str], ...] = ()
    fresh_refs: Tuple[str, ...] = ()
    stale_refs: Tuple[str, ...] = ()
    unknown_refs: Tuple[str, ...] = ()

    @property
    def status(self) -> Status:
        if self.total_containers == 0:
            return Status.OK
        if self.update_count == 0 and self.failed_count == 0:
            return Status.OK
        return Status.WARNING

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def lines(self) -> List[str]:
        """Status line followed by one line per stale container."""
        if self.total_containers == 0:
            return ["OK - No running containers found"]
        if self.update_count == 0 and self.failed_count == 0:
            return [f"OK - All {self.total_containers} container(s) are up to date"]
        if self.update_count == 0:
            return [
                f"WARNING - {self.failed_count} image check(s) failed, "
                f"0 updates found across {self.total_containers} container(s)"
            ]
        summary = f"WARNING - Updates available for {self.update_count} container(s)"
        if self.failed_count:
            summary += f" ({self.failed_count} image check(s) failed)"
        return [summary] + [f"{name} ({image})" for name, image in self.stale_images]


# ── Reference normalization ──────────────────────────────────────


def normalize_image_ref(raw: str) -> str:
    """Canonical ``repository:tag`` form of an image reference.

    A reference without a colon after its last slash gets ``:latest``.
    A registry host, when present, is kept: the remote lookup needs it.
    """
    last_slash = raw.rfind('/')
    if ':' not in raw[last_slash + 1:]:
        return f"{raw}:{DEFAULT_TAG}"
    return raw


def registry_host(ref: str) -> Optional[str]:
    """Registry host of a reference, or None for the default registry."""
    if '/' in ref and REGISTRY_HOST_PATTERN.match(ref):
        return ref.split('/', 1)[0]
    return None


def repository_key(ref: str) -> str:
    """Repository part of a reference, in Docker's familiar form.

    Strips tag and digest qualifiers, the Docker Hub host and the implicit
    ``library/`` namespace so that ``docker.io/library/nginx:1`` and the
    repo-digest ``nginx@sha256:...`` compare equal.
    """
    at_pos = ref.find('@')
    if at_pos != -1:
        ref = ref[:at_pos]

    # Strip tag only when the colon is in tag position, not a registry port
    last_slash = ref.rfind('/')
    last_colon = ref.rfind(':')
    if last_colon > last_slash:
        ref = ref[:last_colon]

    for prefix in DOCKER_HUB_PREFIXES:
        if ref.startswith(prefix):
            ref = ref[len(prefix):]
            break
    if ref.startswith('library/') and ref.count('/') == 1:
        ref = ref[len('library/'):]
    return ref


def is_valid_digest(value: Any) -> bool:
    return isinstance(value, str) and DIGEST_PATTERN.fullmatch(value) is not None


def select_repo_digest(ref: str, repo_digests: Sequence[str]) -> Optional[str]:
    """Pick the digest of the repo-digest entry belonging to ``ref``'s repository."""
    key = repository_key(ref)
    for entry in repo_digests:
        repo, sep, digest = entry.partition('@')
        if sep and repository_key(repo) == key:
            return digest
    return None


# ── Run context and runtime probe ────────────────────────────────


class RunContext:
    """State scoped to one run: backend, invocation mode and dedup claims."""

    def __init__(self, backend, mode: str, settings: Optional[Dict[str, Any]] = None):
        self.backend = backend
        self.mode = mode
        self.settings = dict(DEFAULT_SETTINGS)
        if settings:
            self.settings.update(settings)
        self.verdicts: Dict[str, ImageVerdict] = {}
        self._claimed = set()
        self._lock = threading.Lock()

    def claim(self, ref: str) -> bool:
        """Claim an image for resolution.  True only for the first caller."""
        with self._lock:
            if ref in self._claimed:
                return False
            self._claimed.add(ref)
            return True

    def record(self, verdict: ImageVerdict) -> None:
        with self._lock:
            self.verdicts[verdict.image] = verdict


def probe(settings: Dict[str, Any]) -> RunContext:
    """Find the first invocation mode with working runtime access.

    Raises:
        BackendUnreachable: when every configured mode fails
    """
    reasons: Dict[str, str] = {}
    for mode in settings.get('modes') or DEFAULT_MODES:
        backend = make_backend(mode, settings.get('socket'), settings.get('timeout', DEFAULT_TIMEOUT))
        try:
            version = backend.ping()
        except LOOKUP_ERRORS as e:
            reasons[mode] = str(e) or e.__class__.__name__
            logger.debug(f"Access via {mode} failed: {reasons[mode]}")
            continue
        logger.debug(f"Using {mode} access (Docker {version})")
        return RunContext(backend, mode, settings)
    raise BackendUnreachable(reasons)


def list_running_containers(ctx: RunContext) -> List[ContainerRecord]:
    containers = [ContainerRecord(name, image) for name, image in ctx.backend.running_containers()]
    logger.debug(f"Found {len(containers)} running container(s)")
    return containers


# ── Digest resolution ────────────────────────────────────────────


class EngineManifestStrategy:
    """Registry manifest digest fetched by the container runtime itself."""

    name = "engine-manifest"

    def __init__(self, backend):
        self.backend = backend

    def lookup(self, ref: str) -> Optional[str]:
        return self.backend.manifest_digest(ref)


def build_remote_strategies(ctx: RunContext) -> list:
    """Ordered remote lookup chain for this run."""
    timeout = ctx.settings['timeout']
    strategies = [EngineManifestStrategy(ctx.backend)]

    helper = SkopeoHelper(ctx.settings['helper'], timeout=timeout)
    if helper.available():
        strategies.append(helper)
    else:
        logger.debug(f"Helper {ctx.settings['helper']} not found, skipping it")

    if ctx.settings.get('registry_fallback'):
        strategies.append(RegistryClient(timeout=timeout))

    return strategies


class DigestResolver:
    """Resolves local repo-digests and remote manifest digests."""

    def __init__(self, backend, strategies: Sequence):
        self.backend = backend
        self.strategies = list(strategies)

    def resolve_local(self, ref: str) -> DigestResult:
        result = DigestResult(DigestSource.LOCAL)
        try:
            repo_digests = self.backend.repo_digests(ref)
        except LOOKUP_ERRORS as e:
            result.reasons.append(f"inspect failed: {e}")
            return result

        digest = select_repo_digest(ref, repo_digests)
        if digest is None:
            result.reasons.append("no repo digest recorded (locally built or untagged image?)")
        elif not is_valid_digest(digest):
            result.reasons.append(f"malformed digest {digest!r}")
        else:
            result.value = digest.lower()
            result.resolved = True
            result.strategy = "repo-digest"
        return result

    def resolve_remote(self, ref: str) -> DigestResult:
        """Try each strategy in order; the first well-formed digest wins."""
        result = DigestResult(DigestSource.REMOTE)
        for strategy in self.strategies:
            try:
                digest = strategy.lookup(ref)
            except LOOKUP_ERRORS as e:
                result.reasons.append(f"{strategy.name}: {e}")
                continue
            if not is_valid_digest(digest):
                result.reasons.append(f"{strategy.name}: malformed digest {digest!r}")
                continue
            result.value = digest.lower()
            result.resolved = True
            result.strategy = strategy.name
            return result
        if not self.strategies:
            result.reasons.append("no remote lookup strategy available")
        return result


# ── Evaluation and aggregation ───────────────────────────────────


def evaluate_image(resolver: DigestResolver, ref: str, container: str) -> ImageVerdict:
    """Classify one image as fresh, stale or unknown."""
    logger.info(f"Checking {ref} ({container})...")
    logger.debug(f"{ref}: registry host {registry_host(ref) or '(default)'}")

    local = resolver.resolve_local(ref)
    if not local.resolved:
        logger.warning(f"Could not determine local digest of {ref}: {'; '.join(local.reasons)}")
        return ImageVerdict(ref, Verdict.UNKNOWN, container)

    remote = resolver.resolve_remote(ref)
    if not remote.resolved:
        logger.warning(f"Could not determine registry digest of {ref}: {'; '.join(remote.reasons)}")
        return ImageVerdict(ref, Verdict.UNKNOWN, container, local_digest=local.value)

    logger.debug(f"{ref}: local {local.value}, remote {remote.value} (via {remote.strategy})")
    if local.value != remote.value:
        logger.info(f"UPDATE AVAILABLE: {ref}")
        status = Verdict.STALE
    else:
        status = Verdict.FRESH
    return ImageVerdict(ref, status, container, local.value, remote.value)


def evaluate(ctx: RunContext, resolver: DigestResolver,
             containers: Sequence[ContainerRecord]) -> Dict[str, ImageVerdict]:
    """Resolve and classify every unique image once.

    The first container referencing an image is its representative in
    messages.  With ``workers > 1`` distinct images are checked in parallel.
    """
    pending: List[Tuple[str, str]] = []
    for container in containers:
        ref = normalize_image_ref(container.raw_image)
        if ctx.claim(ref):
            pending.append((ref, container.name))
        else:
            logger.debug(f"{container.name}: {ref} already checked")

    workers = ctx.settings.get('workers', 1)
    if workers <= 1 or len(pending) <= 1:
        for ref, name in pending:
            ctx.record(evaluate_image(resolver, ref, name))
    else:
        with ThreadPoolExecutor(max_workers=min(workers, len(pending))) as executor:
            futures = [executor.submit(evaluate_image, resolver, ref, name) for ref, name in pending]
            for future in as_completed(futures):
                ctx.record(future.result())

    return dict(ctx.verdicts)


def aggregate(containers: Sequence[ContainerRecord],
              verdicts: Dict[str, ImageVerdict]) -> RunReport:
    """Fold per-image verdicts into the run report.  No I/O."""
    stale_images = []
    for container in containers:
        ref = normalize_image_ref(container.raw_image)
        verdict = verdicts.get(ref)
        if verdict is not None and verdict.status is Verdict.STALE:
            stale_images.append((container.name, ref))

    buckets: Dict[Verdict, List[str]] = {v: [] for v in Verdict}
    for ref, verdict in verdicts.items():
        buckets[verdict.status].append(ref)

    return RunReport(
        total_containers=len(containers),
        update_count=len(stale_images),
        failed_count=len(buckets[Verdict.UNKNOWN]),
        stale_images=tuple(stale_images),
        fresh_refs=tuple(sorted(buckets[Verdict.FRESH])),
        stale_refs=tuple(sorted(buckets[Verdict.STALE])),
        unknown_refs=tuple(sorted(buckets[Verdict.UNKNOWN])),
    )


def run_check(settings: Dict[str, Any]) -> Tuple[List[str], int]:
    """Run the whole check.  Returns the output lines and the exit code."""
    try:
        ctx = probe(settings)
    except BackendUnreachable as e:
        logger.error(str(e))
        return ["CRITICAL - Cannot access Docker daemon"], Status.CRITICAL.exit_code

    try:
        containers = list_running_containers(ctx)
    except LOOKUP_ERRORS as e:
        logger.error(f"Failed to list containers: {e}")
        return [f"WARNING - Could not list running containers: {e}"], Status.WARNING.exit_code

    verdicts: Dict[str, ImageVerdict] = {}
    if containers:
        resolver = DigestResolver(ctx.backend, build_remote_strategies(ctx))
        verdicts = evaluate(ctx, resolver, containers)

    report = aggregate(containers, verdicts)
    logger.debug(
        f"{len(report.fresh_refs)} fresh, {len(report.stale_refs)} stale, "
        f"{len(report.unknown_refs)} unknown image(s)"
    )
    return report.lines(), report.exit_code


# ── Configuration and CLI ────────────────────────────────────────


def setup_logging(level: str) -> logging.Logger:
    """Send log output of this tool and its backends to stderr.

    Replaces the stderr handler installed by an earlier call, so the
    handler always writes to the current ``sys.stderr``.  Handlers added
    by others are left alone.
    """
    formatter = logging.Formatter(
        '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S %Z'
    )
    for name in ('duc', 'docker_api', 'registry'):
        log = logging.getLogger(name)
        log.setLevel(getattr(logging, level.upper()))
        log.propagate = False
        for handler in list(log.handlers):
            if getattr(handler, '_duc_stderr', False):
                log.removeHandler(handler)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        handler._duc_stderr = True
        log.addHandler(handler)
    return logger


def load_config(config_file: str) -> Dict[str, Any]:
    """Load and validate a JSON configuration file."""
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
        jsonschema.validate(config, CONFIG_SCHEMA)
    except FileNotFoundError:
        raise ConfigError(f"Config file {config_file} not found")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing config file: {e}")
    except jsonschema.ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e.message}")
    return config


def _env_number(name: str, convert):
    value = os.environ.get(name)
    if value is None or value == '':
        return None
    try:
        return convert(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


def resolve_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """Merge defaults, config file, environment and flags (later wins)."""
    settings = dict(DEFAULT_SETTINGS)
    if args.config:
        settings.update(load_config(args.config))

    env = {
        'timeout': _env_number('CHECK_TIMEOUT', float),
        'workers': _env_number('CHECK_WORKERS', int),
    }
    docker_host = os.environ.get('DOCKER_HOST', '')
    if docker_host.startswith('unix://'):
        env['socket'] = docker_host[len('unix://'):]

    flags = {
        'timeout': args.timeout,
        'workers': args.workers,
        'socket': args.socket,
        'modes': args.mode,
        'helper': args.helper,
        'registry_fallback': True if args.registry_fallback else None,
    }
    for source in (env, flags):
        settings.update({k: v for k, v in source.items() if v is not None})

    try:
        jsonschema.validate({k: v for k, v in settings.items() if v is not None}, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigError(f"Invalid setting '{'.'.join(str(p) for p in e.path)}': {e.message}")
    return settings


class _ArgumentParser(argparse.ArgumentParser):
    """Report usage errors as ConfigError; argparse's own exit code is 2."""

    def error(self, message):
        raise ConfigError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog='duc',
        description='Report running containers whose image has a newer version in the registry'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE'),
        help='Path to optional JSON configuration file (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help=f'Timeout in seconds for each backend call (env: CHECK_TIMEOUT, default: {DEFAULT_TIMEOUT})'
    )
    parser.add_argument(
        '--workers',
        type=int,
        help='Number of images checked in parallel (env: CHECK_WORKERS, default: 1)'
    )
    parser.add_argument(
        '--socket',
        help='Docker Engine API socket path (env: DOCKER_HOST, default: /var/run/docker.sock)'
    )
    parser.add_argument(
        '--mode',
        action='append',
        choices=INVOCATION_MODES,
        help='Invocation mode to try, repeatable, in order (default: api, cli, sudo)'
    )
    parser.add_argument(
        '--helper',
        help='skopeo binary used when the runtime cannot fetch manifests (default: skopeo)'
    )
    parser.add_argument(
        '--registry-fallback',
        action='store_true',
        help='Query the registry HTTP API directly as a last resort'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        help='Logging level on stderr (env: LOG_LEVEL, default: INFO; TRACE=1 forces DEBUG)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
        level = 'DEBUG' if os.environ.get('TRACE') == '1' else args.log_level
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR'):
            raise ConfigError(f"invalid log level {level!r}")
        setup_logging(level)
        settings = resolve_settings(args)
    except ConfigError as e:
        print(f"WARNING - Invalid configuration: {e}")
        return Status.WARNING.exit_code

    try:
        lines, exit_code = run_check(settings)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        lines, exit_code = [f"WARNING - Check failed: {e}"], Status.WARNING.exit_code
    for line in lines:
        print(line)
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
