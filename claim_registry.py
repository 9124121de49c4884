"""Email-keyed claim registries.

``reserve`` is an atomic add-if-absent: it returns True only for the first
claim of an email inside the registry's retention window.
"""

from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone

import redis

from errors import StorageUnavailable


DEFAULT_TTL = timedelta(minutes=10)


def _ts(now: datetime) -> float:
    return now.timestamp()


class MemoryClaimRegistry:
    """Process-local map of email -> claim time with a retention window."""

    def __init__(self, ttl: timedelta = DEFAULT_TTL):
        self.ttl = ttl
        self._claims = {}
        self._lock = threading.Lock()

    def _cleanup(self, now_ts: float):
        limit = self.ttl.total_seconds()
        for email, ts in list(self._claims.items()):
            if now_ts - ts > limit:
                del self._claims[email]

    def reserve(self, email: str, now: datetime) -> bool:
        now_ts = _ts(now)
        with self._lock:
            self._cleanup(now_ts)
            if email in self._claims:
                return False
            self._claims[email] = now_ts
            return True

    def contains(self, email: str, now: datetime) -> bool:
        with self._lock:
            self._cleanup(_ts(now))
            return email in self._claims

    def next_claim_at(self, email: str, now: datetime):
        with self._lock:
            self._cleanup(_ts(now))
            ts = self._claims.get(email)
        if ts is None:
            return None
        return datetime.fromtimestamp(ts, tz=timezone.utc) + self.ttl


class FileClaimRegistry:
    """Newline-delimited, lower-cased, append-only email file. Entries never expire."""

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()

    def ensure_file(self):
        if not os.path.exists(self.path):
            with open(self.path, "w", encoding="utf-8"):
                pass

    def _read(self) -> set:
        try:
            self.ensure_file()
            with open(self.path, "r", encoding="utf-8") as fh:
                return {line.strip().lower() for line in fh if line.strip()}
        except OSError as e:
            raise StorageUnavailable(f"Claim log unreadable: {e}")

    def reserve(self, email, now):
        with self._lock:
            if email in self._read():
                return False
            try:
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(f"{email}\n")
            except OSError as e:
                raise StorageUnavailable(f"Claim log not writable: {e}")
            return True

    def contains(self, email, now):
        with self._lock:
            return email in self._read()

    def next_claim_at(self, email, now):
        return None


class RedisClaimRegistry:
    def __init__(self, client, ttl: timedelta = DEFAULT_TTL, prefix="spinwheel:claim:"):
        self.client = client
        self.ttl = ttl
        self.prefix = prefix

    @classmethod
    def from_url(cls, url, **kwargs):
        return cls(redis.from_url(url), **kwargs)

    def reserve(self, email, now):
        try:
            created = self.client.set(
                self.prefix + email, int(_ts(now)), nx=True, ex=int(self.ttl.total_seconds())
            )
        except redis.RedisError as e:
            raise StorageUnavailable(f"Redis unavailable: {e}")
        return bool(created)

    def contains(self, email, now):
        try:
            return bool(self.client.exists(self.prefix + email))
        except redis.RedisError as e:
            raise StorageUnavailable(f"Redis unavailable: {e}")

    def next_claim_at(self, email, now):
        try:
            remaining = self.client.ttl(self.prefix + email)
        except redis.RedisError as e:
            raise StorageUnavailable(f"Redis unavailable: {e}")
        if remaining is None or remaining < 0:
            return None
        return now + timedelta(seconds=remaining)
