from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def from_epoch(seconds: Optional[float]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_epoch(ts: datetime) -> float:
    """Unix seconds; naive datetimes are read as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


@dataclass
class Account:
    id: str
    name: str
    provider: str
    credentials: dict
    created_at: str


@dataclass(frozen=True)
class LimitReading:
    id: str
    label: str
    utilization: float          # 0-100
    resets_at: datetime
    category: Optional[str] = None


@dataclass(frozen=True)
class UsageSnapshot:
    provider: str
    account_id: str
    account_name: str
    timestamp: datetime
    limits: tuple[LimitReading, ...] = ()

    def limit(self, limit_id: str) -> Optional[LimitReading]:
        for reading in self.limits:
            if reading.id == limit_id:
                return reading
        return None

    def max_utilization(self) -> float:
        return max((r.utilization for r in self.limits), default=0.0)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "timestamp": to_iso(self.timestamp),
            "limits": [
                {
                    "id": r.id,
                    "label": r.label,
                    "utilization": r.utilization,
                    "resets_at": to_iso(r.resets_at),
                    "category": r.category,
                }
                for r in self.limits
            ],
        }


@dataclass
class HistoryLimit:
    limit_id: str
    utilization: float
    resets_at: datetime


@dataclass
class HistoryEntry:
    id: str
    provider: str
    account_id: str
    account_name: str
    timestamp: datetime
    limits: list[HistoryLimit] = field(default_factory=list)

    @staticmethod
    def key_for(timestamp: datetime, provider: str, account_id: str) -> str:
        return f"{int(to_epoch(timestamp))}-{provider}-{account_id}"

    @classmethod
    def from_snapshot(cls, snapshot: UsageSnapshot) -> "HistoryEntry":
        return cls(
            id=cls.key_for(snapshot.timestamp, snapshot.provider, snapshot.account_id),
            provider=snapshot.provider,
            account_id=snapshot.account_id,
            account_name=snapshot.account_name,
            timestamp=snapshot.timestamp,
            limits=[
                HistoryLimit(limit_id=r.id, utilization=r.utilization, resets_at=r.resets_at)
                for r in snapshot.limits
            ],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "timestamp": to_iso(self.timestamp),
            "limits": [
                {
                    "id": l.limit_id,
                    "utilization": l.utilization,
                    "resets_at": to_iso(l.resets_at),
                }
                for l in self.limits
            ],
        }


@dataclass
class RetentionPolicy:
    retention_days: int = 90    # 0 = keep forever
    auto_cleanup: bool = True


@dataclass
class UsageStats:
    provider: str
    limit_id: str
    period_start: datetime
    period_end: datetime
    avg_utilization: float
    max_utilization: float
    min_utilization: float
    sample_count: int

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "limit_id": self.limit_id,
            "period_start": to_iso(self.period_start),
            "period_end": to_iso(self.period_end),
            "avg": self.avg_utilization,
            "max": self.max_utilization,
            "min": self.min_utilization,
            "sample_count": self.sample_count,
        }


@dataclass
class HistoryMetadata:
    entry_count: int
    oldest_entry: Optional[datetime]
    newest_entry: Optional[datetime]
    last_cleanup: Optional[datetime]
    retention_days: int

    def to_dict(self) -> dict:
        return {
            "entry_count": self.entry_count,
            "oldest_entry": to_iso(self.oldest_entry),
            "newest_entry": to_iso(self.newest_entry),
            "last_cleanup": to_iso(self.last_cleanup),
            "retention_days": self.retention_days,
        }


# Thresholds cleared when a limit is detected as reset
RESET_CLEAR_THRESHOLDS = (50, 75, 90, 100)

# Adaptive refresh bands: (min max-utilization %, interval seconds), checked in order
ADAPTIVE_BANDS = (
    (90.0, 60),
    (75.0, 180),
    (50.0, 300),
)
ADAPTIVE_IDLE_INTERVAL = 600
