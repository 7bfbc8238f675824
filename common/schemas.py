import re
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from common.error_handling import DecodeError

FlagReason = Literal["high-frequency", "location-change", "odd-hour-high-value"]

RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)

def parse_rfc3339(raw: str) -> Optional[datetime]:
    """Parse an RFC3339 timestamp with an explicit offset, or return None"""
    match = RFC3339_RE.match(raw)
    if match is None:
        return None
    date_part, time_part, fraction, offset = match.groups()
    if fraction:
        # datetime carries microseconds only
        time_part += "." + fraction[:6].ljust(6, "0")
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        return datetime.fromisoformat(f"{date_part}T{time_part}{offset}")
    except ValueError:
        return None

def format_rfc3339(value: datetime) -> str:
    """UTC timestamp with a Z suffix, e.g. 2024-03-01T12:00:00Z"""
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}"
    return text + "Z"

class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True, strict=True)

    id: str
    user_id: str
    amount: float
    currency: str
    timestamp: datetime
    location: str

    @field_validator("timestamp", mode="before")
    @classmethod
    def require_rfc3339(cls, value: Any) -> datetime:
        if isinstance(value, str):
            parsed = parse_rfc3339(value)
            if parsed is None:
                raise ValueError("timestamp must be RFC3339 with a UTC offset")
            return parsed
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise ValueError("timestamp must carry a UTC offset")
            return value
        raise ValueError("timestamp must be an RFC3339 string")

    @field_validator("timestamp")
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        return value.astimezone(timezone.utc)

class AnomalyFlag(BaseModel):
    reason: FlagReason
    transaction_id: str
    user_id: str
    detail: Dict[str, Any] = {}

    def describe(self) -> str:
        if self.reason == "location-change":
            return f"Location change: {self.detail.get('previous')} → {self.detail.get('current')}"
        if self.reason == "high-frequency":
            return f"High frequency transactions ({self.detail.get('count')} within {self.detail.get('window_seconds')}s)"
        return f"High-value transaction at odd hour ({self.detail.get('amount')} at {self.detail.get('hour'):02d}h UTC)"

def decode_transaction(payload: Union[bytes, str]) -> Transaction:
    """Parse a wire payload; any structural problem becomes a DecodeError."""
    try:
        return Transaction.model_validate_json(payload)
    except ValidationError as e:
        raise DecodeError(f"invalid transaction payload: {e.error_count()} error(s)", e) from e

def encode_transaction(txn: Transaction) -> bytes:
    return txn.model_dump_json().encode("utf-8")
