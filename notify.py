"""
Notification sink for hubwatch: Discord channel messages with embeds.

Delivery failures are logged as warnings and never re-raised so that a broken
notification channel cannot interrupt the poll cycle.  Only the startup check
in DiscordNotifier.verify() raises, since the monitor has no purpose without
a working channel.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

DISCORD_API_URL = "https://discord.com/api/v10"
MAX_EMBEDS_PER_MESSAGE = 10
EMBED_COLOR = 0xff9900
EMBED_FOOTER = "Docker Version Checker"


class NotificationSetupError(Exception):
    """Raised when the bot cannot authenticate or reach its channel."""


def hub_url(image: str) -> str:
    """Return the Docker Hub page for an image name."""
    if '/' not in image:
        return f"https://hub.docker.com/_/{image}"
    namespace, repo = image.split('/', 1)
    if namespace == 'library':
        return f"https://hub.docker.com/_/{repo}"
    return f"https://hub.docker.com/r/{image}"


def build_update_message(image: str, current_tag: str, latest_tag: str,
                         timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the embed announcing that image has a newer tag."""
    when = timestamp or datetime.now(timezone.utc)
    return {
        'title': "Docker Image Update Available",
        'description': f"**{image}** has a newer version available.",
        'url': hub_url(image),
        'color': EMBED_COLOR,
        'fields': [
            {'name': "Current Tag", 'value': current_tag, 'inline': True},
            {'name': "Latest Tag", 'value': latest_tag, 'inline': True},
        ],
        'timestamp': when.isoformat(),
        'footer': {'text': EMBED_FOOTER},
    }


def chunked(items: Sequence[Any], size: int) -> Iterator[List[Any]]:
    """Yield consecutive slices of at most size items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class DiscordNotifier:
    """Posts embeds to a single Discord channel through the bot REST API.

    Args:
        token: Bot token
        channel_id: Target text channel
        session: Optional requests session (a new one is created if omitted)
        dry_run: If True, log messages instead of sending them
    """

    def __init__(self, token: str, channel_id: str,
                 session: Optional[requests.Session] = None, dry_run: bool = False):
        self.channel_id = channel_id
        self.dry_run = dry_run
        self._session = session or requests.Session()
        self._session.headers.update({
            'Authorization': f"Bot {token}",
            'Content-Type': 'application/json',
        })

    def _url(self, path: str) -> str:
        return f"{DISCORD_API_URL}{path}"

    def verify(self) -> str:
        """Check the token and channel; return the bot's user name.

        Raises NotificationSetupError on any failure.
        """
        try:
            response = self._session.get(self._url('/users/@me'), timeout=_REQUEST_TIMEOUT)
            response.raise_for_status()
            user = response.json()

            response = self._session.get(self._url(f'/channels/{self.channel_id}'),
                                         timeout=_REQUEST_TIMEOUT)
            response.raise_for_status()
        except (requests.RequestException, ValueError) as e:
            raise NotificationSetupError(f"Discord login failed: {e}") from e

        name = user.get('username', 'unknown')
        logger.info("discord: logged in as %s", name)
        return name

    def send(self, embeds: List[Dict[str, Any]]) -> bool:
        """Post one message carrying up to MAX_EMBEDS_PER_MESSAGE embeds."""
        if not embeds:
            return True
        if len(embeds) > MAX_EMBEDS_PER_MESSAGE:
            raise ValueError(f"at most {MAX_EMBEDS_PER_MESSAGE} embeds per message, got {len(embeds)}")

        if self.dry_run:
            for embed in embeds:
                fields = {f['name']: f['value'] for f in embed.get('fields', [])}
                logger.info("[DRY RUN] Would notify: %s (%s -> %s)", embed.get('description'),
                            fields.get('Current Tag'), fields.get('Latest Tag'))
            return True

        try:
            response = self._session.post(self._url(f'/channels/{self.channel_id}/messages'),
                                          json={'embeds': embeds}, timeout=_REQUEST_TIMEOUT)
            response.raise_for_status()
            logger.info("discord: sent %d notification(s)", len(embeds))
            return True
        except requests.RequestException as e:
            logger.warning("discord: failed to send notification: %s", e)
            return False

    def send_batches(self, embeds: List[Dict[str, Any]],
                     batch_size: int = MAX_EMBEDS_PER_MESSAGE) -> int:
        """Send embeds in groups of batch_size; return how many groups were delivered.

        A failed group does not stop the remaining ones.
        """
        delivered = 0
        for batch in chunked(embeds, batch_size):
            try:
                if self.send(batch):
                    delivered += 1
            except Exception as e:
                logger.warning("discord: unexpected error: %s", e)
        return delivered
