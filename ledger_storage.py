"""Interchangeable persistence for ledger records.

A backend stores one JSON-compatible dict per key and offers ``lock(key)`` so
the ledger can run each read-modify-write as a single unit. Backends raise
``StorageUnavailable`` when they cannot be reached or their data is corrupt.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager

import redis
from sqlalchemy.exc import SQLAlchemyError

from errors import DebounceRejected, StorageUnavailable
from extensions import db
from models_spins import LedgerRecord


logger = logging.getLogger(__name__)


class LedgerStorage:
    def __init__(self):
        self._locks = {}
        self._locks_guard = threading.Lock()

    def load(self, key: str) -> dict | None:
        raise NotImplementedError

    def save(self, key: str, record: dict) -> None:
        raise NotImplementedError

    @contextmanager
    def lock(self, key: str):
        # Single-process writer; multi-process backends override this.
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class MemoryStorage(LedgerStorage):
    def __init__(self):
        super().__init__()
        self._data = {}

    def load(self, key):
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key, record):
        self._data[key] = json.dumps(record)


class JsonFileStorage(LedgerStorage):
    """Local JSON file holding every record; rewritten wholesale on each save."""

    def __init__(self, path):
        super().__init__()
        self.path = path
        self._file_lock = threading.Lock()

    def _read_all(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = fh.read()
            data = json.loads(raw) if raw.strip() else {}
        except (OSError, ValueError) as e:
            raise StorageUnavailable(f"Ledger file unreadable: {e}")
        if not isinstance(data, dict):
            raise StorageUnavailable("Ledger file is corrupt")
        return data

    def load(self, key):
        with self._file_lock:
            record = self._read_all().get(key)
        return record if isinstance(record, dict) else None

    def save(self, key, record):
        with self._file_lock:
            data = self._read_all()
            data[key] = record
            tmp_path = f"{self.path}.tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, separators=(",", ":"))
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise StorageUnavailable(f"Ledger file not writable: {e}")


class RedisStorage(LedgerStorage):
    """Redis-backed records; ``lock`` is a redis lock so several workers can share it."""

    def __init__(self, client, prefix="spinwheel:", lock_timeout=5, lock_wait=2):
        super().__init__()
        self.client = client
        self.prefix = prefix
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    @classmethod
    def from_url(cls, url, **kwargs):
        return cls(redis.from_url(url), **kwargs)

    def load(self, key):
        try:
            raw = self.client.get(self.prefix + key)
        except redis.RedisError as e:
            raise StorageUnavailable(f"Redis unavailable: {e}")
        if raw is None:
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            raise StorageUnavailable("Ledger record is corrupt")
        return record if isinstance(record, dict) else None

    def save(self, key, record):
        try:
            self.client.set(self.prefix + key, json.dumps(record))
        except redis.RedisError as e:
            raise StorageUnavailable(f"Redis unavailable: {e}")

    @contextmanager
    def lock(self, key):
        lock = self.client.lock(
            f"{self.prefix}lock:{key}", timeout=self.lock_timeout, blocking_timeout=self.lock_wait
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise StorageUnavailable(f"Redis unavailable: {e}")
        if not acquired:
            raise DebounceRejected()
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning("Ledger lock for %s expired before release", key)


class SqlStorage(LedgerStorage):
    """Records in the ``spin_ledger_records`` table. Needs an app context."""

    def load(self, key):
        try:
            row = db.session.get(LedgerRecord, key)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StorageUnavailable(f"Database unavailable: {e}")
        if row is None:
            return None
        try:
            record = json.loads(row.payload or "{}")
        except ValueError:
            raise StorageUnavailable("Ledger record is corrupt")
        return record if isinstance(record, dict) else None

    def save(self, key, record):
        try:
            row = db.session.get(LedgerRecord, key)
            if row is None:
                row = LedgerRecord(key=key)
                db.session.add(row)
            row.payload = json.dumps(record)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StorageUnavailable(f"Database unavailable: {e}")
