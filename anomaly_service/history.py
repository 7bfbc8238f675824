"""
Recent-history store: bounded per-user timestamps and last-known location.

Backing-store failures never reach the caller. A failed read looks exactly
like a user with no history (empty timestamps, no previous location), so an
outage and a genuinely new user produce the same signal to the rules.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from common.error_handling import HistoryStoreError
from common.redis_client import RedisClient
from common.schemas import format_rfc3339

logger = logging.getLogger(__name__)

HISTORY_PREFIX = "history:"
LAST_LOCATION_PREFIX = "last_location:"
SEEN_PREFIX = "seen:"

@dataclass
class RecentHistory:
    """What the rule engine sees for one user at one event"""
    recent_timestamps: List[str] = field(default_factory=list)
    last_location: Optional[str] = None

class RecentHistoryStore:
    def __init__(self, redis_client: RedisClient, size: int = 10):
        if size < 1:
            raise ValueError("history size must be at least 1")
        self.redis = redis_client
        self.size = size

    def record_timestamp(self, user_id: str, timestamp: datetime) -> List[str]:
        """Push timestamp for user_id and return the last <= size entries, newest first"""
        try:
            return self.redis.push_bounded(HISTORY_PREFIX + user_id, format_rfc3339(timestamp), self.size)
        except HistoryStoreError as e:
            logger.warning(f"History unavailable for {user_id}, treating as empty: {e.original_error}")
            return []

    def get_last_location(self, user_id: str) -> Optional[str]:
        try:
            return self.redis.get_value(LAST_LOCATION_PREFIX + user_id)
        except HistoryStoreError as e:
            logger.warning(f"Last location unavailable for {user_id}, treating as first sighting: {e.original_error}")
            return None

    def set_last_location(self, user_id: str, location: str) -> None:
        try:
            self.redis.set_value(LAST_LOCATION_PREFIX + user_id, location)
        except HistoryStoreError as e:
            logger.warning(f"Could not store last location for {user_id}: {e.original_error}")

    def already_seen(self, transaction_id: str) -> bool:
        """True if this transaction id was stored before; store errors count as unseen"""
        try:
            return self.redis.exists(SEEN_PREFIX + transaction_id)
        except HistoryStoreError as e:
            logger.warning(f"Duplicate check unavailable for {transaction_id}: {e.original_error}")
            return False

    def mark_seen(self, transaction_id: str, ttl_seconds: int) -> None:
        """Remember a transaction id once it has been stored"""
        try:
            self.redis.set_value(SEEN_PREFIX + transaction_id, "1", ttl_seconds=ttl_seconds)
        except HistoryStoreError as e:
            logger.warning(f"Could not mark {transaction_id} as seen: {e.original_error}")

    def snapshot(self, user_id: str, timestamp: datetime) -> RecentHistory:
        """Record the event and return the history view the rules evaluate against"""
        return RecentHistory(
            recent_timestamps=self.record_timestamp(user_id, timestamp),
            last_location=self.get_last_location(user_id),
        )
