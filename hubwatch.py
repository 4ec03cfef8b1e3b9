#!/usr/bin/env python3
"""
Docker Hub Version Watcher

This script watches the containers running on the local Docker host, looks up
the newest compatible tag of each image on Docker Hub, and posts a Discord
notification the first time a newer tag shows up.  It never pulls images or
touches containers.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import platform
import socket as _socket
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import jsonschema
import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

from notify import (DiscordNotifier, MAX_EMBEDS_PER_MESSAGE, NotificationSetupError,
                    build_update_message)
from version_utils import (DEFAULT_TAG, TagRecord, find_latest_matching_tag,
                           summarize_catalog)

# Platform-specific imports and constant
IS_WINDOWS = platform.system() == 'Windows'
if not IS_WINDOWS:
    import fcntl
else:
    import msvcrt


# Constants
DEFAULT_NAMESPACE = "library"
HUB_TAGS_URL = "https://hub.docker.com/v2/repositories/{repository}/tags"
PAGE_SIZE = 100
REQUEST_TIMEOUT = 30
CHECK_INTERVAL = 5 * 60
DEFAULT_VERSION_FILE = "./data/versions.json"
DOCKER_SOCKET_PATH = '/var/run/docker.sock'
MAX_PAGES = 100

logger = logging.getLogger('hubwatch')

# Version state file schema
STATE_SCHEMA = {
    "type": "object",
    "properties": {
        "images": {
            "type": "object",
            "additionalProperties": {"type": "string"}
        },
        "announced": {
            "type": "object",
            "additionalProperties": {"type": "boolean"}
        }
    },
    "required": ["images", "announced"]
}


class StateSaveError(Exception):
    """Raised when the version state cannot be written to disk."""


# ---------------------------------------------------------------------------
# Docker Engine socket client
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


@dataclass(frozen=True)
class RunningImage:
    """An image reference observed on a running container."""
    image: str
    tag: str


def parse_image_reference(ref: str) -> Optional[RunningImage]:
    """Split a container's image reference into image name and tag.

    Handles digest qualifiers (nginx:1.25@sha256:...) and registry ports
    (localhost:5000/app).  The tag defaults to 'latest'.  Bare image IDs
    (sha256:...) carry no name and yield None.
    """
    if not ref or ref.startswith('sha256:'):
        return None

    at_pos = ref.find('@')
    if at_pos != -1:
        ref = ref[:at_pos]

    # Only a colon after the last slash separates a tag
    last_slash = ref.rfind('/')
    last_colon = ref.rfind(':')
    if last_colon > last_slash:
        return RunningImage(ref[:last_colon], ref[last_colon + 1:] or DEFAULT_TAG)
    return RunningImage(ref, DEFAULT_TAG)


class DockerClient:
    """Minimal Docker Engine API client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def get(self, path: str, **kwargs) -> requests.Response:
        r = self._session.get(self._url(path), timeout=REQUEST_TIMEOUT, **kwargs)
        r.raise_for_status()
        return r

    def list_running_images(self) -> List[RunningImage]:
        """Return the de-duplicated image references of running containers.

        Returns an empty list if the Docker daemon cannot be reached.
        """
        try:
            containers = self.get('/containers/json').json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to list running Docker containers: {e}")
            return []

        seen = []
        for container in containers:
            ref = container.get('Image', '')
            running = parse_image_reference(ref)
            if running is None:
                logger.debug(f"Skipping container with untagged image '{ref}'")
                continue
            if running not in seen:
                seen.append(running)
        return seen


# ---------------------------------------------------------------------------
# Docker Hub tag catalog
# ---------------------------------------------------------------------------

def normalize_repository(image: str) -> str:
    """Expand a bare image name to its Docker Hub repository: nginx -> library/nginx."""
    return image if '/' in image else f"{DEFAULT_NAMESPACE}/{image}"


class TagCatalogFetcher:
    """Fetches and caches the full tag list of Docker Hub repositories.

    The cache is keyed by normalized repository and lives as long as the
    fetcher.  Complete catalogs, and catalogs cut at MAX_PAGES, are cached;
    a failed fetch is retried on the next call.
    """

    def __init__(self, session: Optional[requests.Session] = None,
                 username: Optional[str] = None, token: Optional[str] = None,
                 cache: Optional[Dict[str, List[TagRecord]]] = None):
        self._session = session or requests.Session()
        self._auth = (username, token) if username and token else None
        self.cache: Dict[str, List[TagRecord]] = {} if cache is None else cache

    def fetch(self, image: str) -> List[TagRecord]:
        """
        Get all tags of an image, newest first as served by Docker Hub.

        Args:
            image: Image name as seen on the container (e.g. 'nginx', 'linuxserver/sonarr')

        Returns:
            List of TagRecords; partial or empty if the registry failed mid-way
        """
        repository = normalize_repository(image)
        cached = self.cache.get(repository)
        if cached is not None:
            logger.debug(f"Using cached tags for {repository} ({len(cached)} tags)")
            return cached

        url = HUB_TAGS_URL.format(repository=repository)
        records: List[TagRecord] = []
        page = 1
        try:
            while True:
                response = self._session.get(
                    url,
                    params={'page_size': PAGE_SIZE, 'page': page, 'ordering': 'last_updated'},
                    headers={'Accept': 'application/json'},
                    auth=self._auth,
                    timeout=REQUEST_TIMEOUT,
                )
                response.raise_for_status()
                data = response.json()
                for result in data.get('results') or []:
                    name = result.get('name')
                    if name:
                        records.append(TagRecord(name, result.get('last_updated') or ''))
                if not data.get('next'):
                    break
                if page >= MAX_PAGES:
                    logger.warning(f"Stopping tag fetch for {repository} after {MAX_PAGES} pages "
                                   f"({len(records)} tags)")
                    break
                page += 1
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Docker Hub tag fetch failed for {repository}: {e}")
            return records

        logger.debug(f"Fetched {len(records)} tags for {repository} in {page} page(s)")
        self.cache[repository] = records
        return records


# ---------------------------------------------------------------------------
# Version state
# ---------------------------------------------------------------------------

@dataclass
class VersionState:
    """Last resolved latest tag per image and whether it was announced."""
    images: Dict[str, str] = field(default_factory=dict)
    announced: Dict[str, bool] = field(default_factory=dict)

    def already_announced(self, image: str, tag: str) -> bool:
        return bool(self.announced.get(image)) and self.images.get(image) == tag

    def record(self, image: str, tag: str) -> None:
        self.images[image] = tag
        self.announced[image] = True

    def to_dict(self) -> Dict[str, Any]:
        return {'images': dict(self.images), 'announced': dict(self.announced)}


@contextmanager
def file_lock(file_path: Path):
    """Context manager for file locking."""
    lock_file = file_path.with_suffix('.lock')
    fp = open(lock_file, 'w')
    try:
        if IS_WINDOWS:
            while True:
                try:
                    msvcrt.locking(fp.fileno(), msvcrt.LK_NBLCK, 1)
                    break
                except OSError:
                    time.sleep(0.1)
        else:
            fcntl.flock(fp, fcntl.LOCK_EX)
        yield
    finally:
        if IS_WINDOWS:
            try:
                msvcrt.locking(fp.fileno(), msvcrt.LK_UNLCK, 1)
            except OSError:
                pass
        else:
            fcntl.flock(fp, fcntl.LOCK_UN)
        fp.close()
        try:
            lock_file.unlink()
        except OSError:
            pass


class StateStore:
    """Reads and writes VersionState as a JSON file."""

    def __init__(self, path: str, dry_run: bool = False):
        self.path = Path(path)
        self.dry_run = dry_run

    def load(self) -> VersionState:
        """Load state; a missing or invalid file yields an empty state."""
        if not self.path.exists():
            return VersionState()

        try:
            with file_lock(self.path):
                with open(self.path, 'r') as f:
                    data = json.load(f)
            jsonschema.validate(data, STATE_SCHEMA)
        except json.JSONDecodeError as e:
            logger.warning(f"Error parsing state file, starting fresh: {e}")
            return VersionState()
        except jsonschema.ValidationError as e:
            logger.warning(f"State file {self.path} is invalid, starting fresh: {e.message}")
            return VersionState()
        except OSError as e:
            logger.warning(f"Error loading state: {e}")
            return VersionState()

        return VersionState(images=data['images'], announced=data['announced'])

    def save(self, state: VersionState) -> None:
        """Write state atomically; raises StateSaveError on failure."""
        if self.dry_run:
            logger.info("[DRY RUN] Would save state to file")
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with file_lock(self.path):
                # Write to temp file first
                temp_file = self.path.with_suffix('.tmp')
                with open(temp_file, 'w') as f:
                    json.dump(state.to_dict(), f, indent=2)

                # Atomic rename
                temp_file.replace(self.path)
        except OSError as e:
            raise StateSaveError(f"Error saving state to {self.path}: {e}") from e


class ChangeTracker:
    """Decides whether a resolved latest tag should be announced."""

    def __init__(self, store: StateStore):
        self.store = store

    def evaluate(self, image: str, running_tag: str, latest_tag: str,
                 state: VersionState) -> bool:
        """
        Record latest_tag for image and report whether to notify.

        A tag is announced at most once: once state holds it as announced,
        later calls stay quiet even if the container still runs an older tag.
        State is updated and persisted on every call.

        Args:
            image: Image name
            running_tag: Tag the container runs
            latest_tag: Newest compatible tag on the registry
            state: Version state, updated in place

        Returns:
            True if a notification should be sent
        """
        if state.already_announced(image, latest_tag):
            should_notify = False
        elif running_tag != latest_tag:
            should_notify = True
        else:
            logger.info(f"{image}:{running_tag} is up to date.")
            should_notify = False

        state.record(image, latest_tag)
        try:
            self.store.save(state)
        except StateSaveError as e:
            logger.error(str(e))

        return should_notify


# ---------------------------------------------------------------------------
# Poll cycle
# ---------------------------------------------------------------------------

class VersionChecker:
    """Runs poll cycles over the running containers.

    Owns the version state and wires the workload lister, catalog fetcher,
    change tracker and notifier together.
    """

    def __init__(self, docker: DockerClient, fetcher: TagCatalogFetcher,
                 tracker: ChangeTracker, notifier: DiscordNotifier,
                 state: Optional[VersionState] = None,
                 batch_size: int = MAX_EMBEDS_PER_MESSAGE):
        self.docker = docker
        self.fetcher = fetcher
        self.tracker = tracker
        self.notifier = notifier
        self.state = state if state is not None else tracker.store.load()
        self.batch_size = batch_size

    def check_image(self, running: RunningImage) -> Optional[Dict[str, str]]:
        """Resolve one image; return update info if it should be announced."""
        catalog = self.fetcher.fetch(running.image)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Catalog for {running.image}: {summarize_catalog(catalog)}")

        latest = find_latest_matching_tag(catalog, running.tag)
        if not latest:
            logger.warning(f"No matching latest tag found for {running.image}:{running.tag}")
            return None

        if not self.tracker.evaluate(running.image, running.tag, latest, self.state):
            return None

        logger.info(f"UPDATE AVAILABLE: {running.image} {running.tag} -> {latest}")
        return {'image': running.image, 'old_tag': running.tag, 'new_tag': latest}

    def check_for_new_versions(self) -> List[Dict[str, str]]:
        """Run one poll cycle and send notifications for new tags."""
        updates_found = []

        for running in self.docker.list_running_images():
            try:
                update = self.check_image(running)
            except Exception as e:
                logger.error(f"Error checking {running.image}: {e}")
                continue
            if update:
                updates_found.append(update)

        if updates_found:
            embeds = [build_update_message(u['image'], u['old_tag'], u['new_tag'])
                      for u in updates_found]
            self.notifier.send_batches(embeds, self.batch_size)

            logger.info("=== Update Summary ===")
            for update in updates_found:
                logger.info(f"{update['image']}: {update['old_tag']} -> {update['new_tag']}")
        else:
            logger.info("No updates found")

        return updates_found


def run_forever(cycle: Callable[[], Any], interval: float,
                clock: Callable[[], float] = time.monotonic,
                sleep: Callable[[float], None] = time.sleep) -> None:
    """Run cycle now and then every interval seconds until interrupted.

    Cycles never overlap: ticks that pass while a cycle is still running
    are skipped and the next cycle starts on the following tick.
    """
    next_run = clock()
    while True:
        try:
            cycle()
        except KeyboardInterrupt:
            logger.info("Exiting...")
            return
        except Exception as e:
            logger.error(f"Error during version check: {e}")

        next_run += interval
        now = clock()
        if now > next_run:
            skipped = int((now - next_run) // interval) + 1
            next_run += skipped * interval
            logger.warning(f"Version check overran the interval, skipping {skipped} tick(s)")

        logger.debug(f"Sleeping for {next_run - now:.0f} seconds...")
        try:
            sleep(next_run - now)
        except KeyboardInterrupt:
            logger.info("Exiting...")
            return


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def setup_logging(level: str) -> None:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)


def resolve_hub_credentials(username: Optional[str],
                            token: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return the credential pair, or (None, None) unless both halves are set."""
    if username and token:
        return username, token
    if username or token:
        logger.warning("Only one of DOCKER_HUB_USERNAME/DOCKER_HUB_TOKEN is set, using anonymous access")
    return None, None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Watch running containers and announce newer Docker Hub tags on Discord'
    )
    parser.add_argument(
        '--discord-token',
        default=os.environ.get('DISCORD_TOKEN'),
        help='Discord bot token (env: DISCORD_TOKEN)'
    )
    parser.add_argument(
        '--channel-id',
        default=os.environ.get('DISCORD_CHANNEL_ID'),
        help='Discord channel to post updates to (env: DISCORD_CHANNEL_ID)'
    )
    parser.add_argument(
        '--hub-username',
        default=os.environ.get('DOCKER_HUB_USERNAME'),
        help='Docker Hub user name (env: DOCKER_HUB_USERNAME)'
    )
    parser.add_argument(
        '--hub-token',
        default=os.environ.get('DOCKER_HUB_TOKEN'),
        help='Docker Hub access token (env: DOCKER_HUB_TOKEN)'
    )
    parser.add_argument(
        '--docker-socket',
        default=os.environ.get('DOCKER_SOCKET', DOCKER_SOCKET_PATH),
        help=f'Path to the Docker Engine socket (env: DOCKER_SOCKET, default: {DOCKER_SOCKET_PATH})'
    )
    parser.add_argument(
        '--state',
        default=os.environ.get('VERSION_FILE', DEFAULT_VERSION_FILE),
        help=f'Path to version state file (env: VERSION_FILE, default: {DEFAULT_VERSION_FILE})'
    )
    parser.add_argument(
        '--interval',
        type=int,
        default=os.environ.get('CHECK_INTERVAL', str(CHECK_INTERVAL)),
        help=f'Check interval in seconds (env: CHECK_INTERVAL, default: {CHECK_INTERVAL})'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Log notifications instead of sending them and do not write state (env: DRY_RUN)'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single check and exit'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    load_dotenv()
    args = parse_args(argv)
    setup_logging(args.log_level)

    if not args.dry_run and not (args.discord_token and args.channel_id):
        logger.error("DISCORD_TOKEN and DISCORD_CHANNEL_ID must be set")
        sys.exit(1)
    if args.interval < 1:
        logger.error(f"Check interval must be positive, got {args.interval}")
        sys.exit(1)

    notifier = DiscordNotifier(args.discord_token or '', args.channel_id or '',
                               dry_run=args.dry_run)
    if not args.dry_run:
        try:
            notifier.verify()
        except NotificationSetupError as e:
            logger.error(f"Fatal error: {e}")
            sys.exit(1)

    username, token = resolve_hub_credentials(args.hub_username, args.hub_token)
    store = StateStore(args.state, dry_run=args.dry_run)
    checker = VersionChecker(
        docker=DockerClient(socket_path=args.docker_socket),
        fetcher=TagCatalogFetcher(username=username, token=token),
        tracker=ChangeTracker(store),
        notifier=notifier,
    )

    if args.once:
        checker.check_for_new_versions()
        return

    logger.info(f"Checking for new versions every {args.interval} seconds")
    run_forever(checker.check_for_new_versions, args.interval)


if __name__ == '__main__':
    main()
