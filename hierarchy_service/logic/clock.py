"""Naive-UTC timestamps, matching the TIMESTAMP columns on every dialect."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_in(seconds: float) -> datetime:
    return utcnow() + timedelta(seconds=float(seconds))


__all__ = ["utcnow", "utc_in"]
