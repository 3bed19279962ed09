from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import select, func
from sqlalchemy.orm import Session


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(Protocol):
    def now(self, db: Session) -> datetime:
        ...


class DatabaseClock:
    """
    Reads the time from the storage layer so every node compares deadlines
    against the same clock.
    """

    def now(self, db: Session) -> datetime:
        return as_utc(db.execute(select(func.now())).scalar_one())


class FixedClock:
    def __init__(self, current: datetime):
        self.current = as_utc(current)

    def now(self, db: Session) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta
