"""
Channel verification collaborator.

Channel details are simulated; nothing here talks to an external platform.
Order creation only needs a verified record to exist for (user, channel).
"""

import random
import re
import threading
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse
from uuid import UUID

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_PATH_PREFIXES = ("/channel/", "/c/", "/user/", "/@")
_CHANNEL_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ChannelError(ValueError):
    pass


class ChannelRecord(BaseModel):
    user_id: UUID
    channel_id: str
    channel_url: str
    title: str
    thumbnail: Optional[str] = None
    subscriber_count: int = 0
    video_count: int = 0
    view_count: int = 0
    is_verified: bool = False
    last_checked: datetime
    total_orders: int = 0
    total_subscribers_added: int = 0


def extract_channel_id(url: str) -> Optional[str]:
    if not url or not url.strip():
        return None
    parsed = urlparse(url.strip())
    if parsed.hostname and "youtu.be" in parsed.hostname:
        # Short links point at videos; resolving the owning channel needs the platform API.
        return None

    path = parsed.path if parsed.hostname else url.strip()
    for prefix in _PATH_PREFIXES:
        if prefix in path:
            candidate = path.split(prefix, 1)[1].split("/")[0]
            if candidate and _CHANNEL_ID_RE.match(candidate):
                return candidate
            return None
    return None


class ChannelRegistry:
    def __init__(self, rng: Optional[random.Random] = None):
        self._channels: dict[tuple[UUID, str], dict] = {}
        self._lock = threading.Lock()
        self._rng = rng or random.Random()

    def verify(self, user_id: UUID, channel_url: str) -> ChannelRecord:
        channel_id = extract_channel_id(channel_url)
        if not channel_id:
            raise ChannelError("Invalid YouTube channel URL. Please use a valid channel URL.")

        now = datetime.now(timezone.utc)
        simulated = {
            "title": f"YouTube Channel - {channel_id[:8]}",
            "thumbnail": "https://ui-avatars.com/api/?name=YouTube&background=ff0000&color=fff&size=150",
            "subscriber_count": self._rng.randint(100, 10_099),
            "video_count": self._rng.randint(10, 109),
            "view_count": self._rng.randint(10_000, 1_009_999),
            "is_verified": self._rng.random() > 0.7,
            "last_checked": now,
        }

        with self._lock:
            key = (user_id, channel_id)
            record = self._channels.get(key)
            if record is None:
                record = {
                    "user_id": user_id,
                    "channel_id": channel_id,
                    "channel_url": channel_url.strip(),
                    "total_orders": 0,
                    "total_subscribers_added": 0,
                }
                self._channels[key] = record
            record.update(simulated)
            result = ChannelRecord(**record)

        logger.info("channel verified", user_id=str(user_id), channel_id=channel_id)
        return result

    def get(self, user_id: UUID, channel_id: str) -> Optional[ChannelRecord]:
        record = self._channels.get((user_id, channel_id))
        return ChannelRecord(**record) if record else None

    def list_for_user(self, user_id: UUID) -> list[ChannelRecord]:
        return [ChannelRecord(**r) for (owner, _), r in list(self._channels.items()) if owner == user_id]

    def record_order(self, user_id: UUID, channel_id: str) -> None:
        with self._lock:
            record = self._channels.get((user_id, channel_id))
            if record:
                record["total_orders"] += 1
                record["last_checked"] = datetime.now(timezone.utc)

    def record_delivery(self, user_id: UUID, channel_id: str, subscribers: int) -> None:
        with self._lock:
            record = self._channels.get((user_id, channel_id))
            if record:
                record["total_subscribers_added"] += subscribers
