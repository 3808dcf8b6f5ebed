"""
Advisory edit-lock policy.

One lock per project id, owned by an opaque session token. A lock older
than the TTL is stale and may be taken over by anyone. The functions here
only decide; the persistence service applies each decision inside one
database transaction so acquire and heartbeat cannot interleave for the
same project.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from . import config

LOCK_TTL = timedelta(minutes=config.LOCK_TTL_MINUTES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Fixed-width ISO-8601 UTC, so stored timestamps sort as text"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class LockRecord(BaseModel):
    project_id: str = Field(..., min_length=1)
    locked_by: str = Field(..., min_length=1)
    locked_at: datetime

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.locked_at

    def to_wire(self) -> Dict[str, str]:
        return {"lockedBy": self.locked_by, "lockedAt": format_timestamp(self.locked_at)}


def is_stale(lock: LockRecord, now: Optional[datetime] = None, ttl: timedelta = LOCK_TTL) -> bool:
    """Stale = strictly older than the TTL"""
    return lock.age(now) > ttl


def can_acquire(
    existing: Optional[LockRecord],
    owner: str,
    now: Optional[datetime] = None,
    ttl: timedelta = LOCK_TTL,
) -> bool:
    """Free, already ours, or abandoned"""
    if existing is None or existing.locked_by == owner:
        return True
    return is_stale(existing, now, ttl)


def can_heartbeat(existing: Optional[LockRecord], owner: str) -> bool:
    # Never creates or steals: only the current owner renews
    return existing is not None and existing.locked_by == owner


def can_release(existing: Optional[LockRecord], owner: Optional[str] = None) -> bool:
    """Whether a release removes ``existing``. Without an owner filter any lock goes."""
    if existing is None:
        return False
    return owner is None or existing.locked_by == owner


def partition_stale(
    locks: Iterable[LockRecord], now: Optional[datetime] = None, ttl: timedelta = LOCK_TTL
) -> Tuple[List[LockRecord], List[LockRecord]]:
    """Split locks into (live, stale) for enumeration with eviction"""
    live, stale = [], []
    for lock in locks:
        (stale if is_stale(lock, now, ttl) else live).append(lock)
    return live, stale
