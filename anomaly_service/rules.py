"""
Anomaly rules. Everything here is pure: a transaction and its recent
history go in, flags come out. Store updates are the caller's job.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Protocol
from common.schemas import AnomalyFlag, Transaction, parse_rfc3339
from .history import RecentHistory

UNKNOWN_COUNTRY = "Unknown"

DEFAULT_CITY_COUNTRIES: Dict[str, str] = {
    "delhi": "India",
    "mumbai": "India",
    "bangalore": "India",
    "pune": "India",
    "kolkata": "India",
    "new york": "USA",
    "chicago": "USA",
    "san francisco": "USA",
    "london": "UK",
    "manchester": "UK",
    "sydney": "Australia",
    "melbourne": "Australia",
}

class CountryLookup(Protocol):
    def country_for(self, city: str) -> str: ...

class StaticCountryLookup:
    """Case-insensitive city → country mapping; unmapped cities resolve to Unknown"""

    def __init__(self, mapping: Mapping[str, str] = None):
        source = DEFAULT_CITY_COUNTRIES if mapping is None else mapping
        self._mapping = {city.strip().lower(): country for city, country in source.items()}

    def country_for(self, city: str) -> str:
        return self._mapping.get(city.strip().lower(), UNKNOWN_COUNTRY)

    def extended(self, extra: Mapping[str, str]) -> "StaticCountryLookup":
        merged = dict(self._mapping)
        merged.update(extra)
        return StaticCountryLookup(merged)

@dataclass(frozen=True)
class RuleThresholds:
    frequency_window_seconds: int = 60
    frequency_min_count: int = 3
    odd_hour_start: int = 0
    odd_hour_end: int = 4
    high_value_threshold: float = 50000.0

    @classmethod
    def from_settings(cls, settings) -> "RuleThresholds":
        return cls(
            frequency_window_seconds=settings.frequency_window_seconds,
            frequency_min_count=settings.frequency_min_count,
            odd_hour_start=settings.odd_hour_start,
            odd_hour_end=settings.odd_hour_end,
            high_value_threshold=settings.high_value_threshold,
        )

def _parse_timestamp(raw: str) -> Optional[datetime]:
    # Entries may be Z-suffixed or carry a numeric offset
    if not isinstance(raw, str):
        return None
    return parse_rfc3339(raw)

def count_in_window(now: datetime, timestamps: Iterable[str], window: timedelta) -> int:
    """Timestamps in [now - window, now]; unparseable entries are skipped"""
    count = 0
    for raw in timestamps:
        ts = _parse_timestamp(raw)
        if ts is None:
            continue
        if timedelta(0) <= now - ts <= window:
            count += 1
    return count

def check_high_frequency(txn: Transaction, history: RecentHistory, thresholds: RuleThresholds) -> Optional[AnomalyFlag]:
    timestamps = history.recent_timestamps
    if len(timestamps) < thresholds.frequency_min_count:
        return None
    window = timedelta(seconds=thresholds.frequency_window_seconds)
    count = count_in_window(txn.timestamp, timestamps, window)
    if count < thresholds.frequency_min_count:
        return None
    return AnomalyFlag(
        reason="high-frequency",
        transaction_id=txn.id,
        user_id=txn.user_id,
        detail={"count": count, "window_seconds": thresholds.frequency_window_seconds},
    )

def check_location_change(txn: Transaction, history: RecentHistory, lookup: CountryLookup) -> Optional[AnomalyFlag]:
    previous = history.last_location
    if previous is None:
        return None
    previous_country = lookup.country_for(previous)
    current_country = lookup.country_for(txn.location)
    if previous_country == current_country:
        return None
    return AnomalyFlag(
        reason="location-change",
        transaction_id=txn.id,
        user_id=txn.user_id,
        detail={
            "previous": previous,
            "current": txn.location,
            "previous_country": previous_country,
            "current_country": current_country,
        },
    )

def check_odd_hour_high_value(txn: Transaction, thresholds: RuleThresholds) -> Optional[AnomalyFlag]:
    hour = txn.timestamp.astimezone(timezone.utc).hour
    if not (thresholds.odd_hour_start <= hour < thresholds.odd_hour_end):
        return None
    if txn.amount <= thresholds.high_value_threshold:
        return None
    return AnomalyFlag(
        reason="odd-hour-high-value",
        transaction_id=txn.id,
        user_id=txn.user_id,
        detail={"amount": txn.amount, "currency": txn.currency, "hour": hour},
    )

def evaluate(
    txn: Transaction,
    history: RecentHistory,
    lookup: CountryLookup = None,
    thresholds: RuleThresholds = None,
) -> List[AnomalyFlag]:
    lookup = lookup or StaticCountryLookup()
    thresholds = thresholds or RuleThresholds()
    candidates = (
        check_high_frequency(txn, history, thresholds),
        check_location_change(txn, history, lookup),
        check_odd_hour_high_value(txn, thresholds),
    )
    return [flag for flag in candidates if flag is not None]
