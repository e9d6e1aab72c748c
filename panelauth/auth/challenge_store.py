"""Short-lived key/value state with per-key TTL.

Holds MFA challenges, passkey ceremonies, pending OAuth registrations and the
server-side session mirror. ``take`` is the single-use read: it returns the
value only to the caller whose delete removed the entry.
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Optional

from panelauth.auth.models import EphemeralEntry
from panelauth.core import config
from panelauth.database.database import SessionLocal, utcnow

logger = logging.getLogger(__name__)


class ChallengeStore(ABC):
    """Key/value store with per-key TTL.

    Entries nobody reads again are swept by ``set`` at most once every
    ``purge_interval`` seconds.
    """

    def __init__(self, clock=time.monotonic, purge_interval: Optional[int] = None):
        self._clock = clock
        self._purge_interval = config.CHALLENGE_PURGE_INTERVAL if purge_interval is None else purge_interval
        self._next_purge = clock() + self._purge_interval

    def _purge_due(self) -> bool:
        now = self._clock()
        if now < self._next_purge:
            return False
        self._next_purge = now + self._purge_interval
        return True

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl: int) -> None: ...

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def take(self, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def purge_expired(self) -> int: ...


class MemoryChallengeStore(ChallengeStore):
    """Process-local store. Only correct when a single process serves requests."""

    def __init__(self, clock=time.monotonic, purge_interval: Optional[int] = None):
        super().__init__(clock, purge_interval)
        self._entries: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def set(self, key, value, ttl):
        with self._lock:
            self._entries[key] = (self._clock() + ttl, json.dumps(value))
            if self._purge_due():
                self._drop_expired()

    def _live(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return raw

    def get(self, key):
        with self._lock:
            raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def take(self, key):
        with self._lock:
            raw = self._live(key)
            self._entries.pop(key, None)
        return json.loads(raw) if raw is not None else None

    def _drop_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def purge_expired(self) -> int:
        with self._lock:
            return self._drop_expired()


class DatabaseChallengeStore(ChallengeStore):
    """Durable store backed by the ``ephemeral_entries`` table."""

    def __init__(self, session_factory=SessionLocal, clock=time.monotonic, purge_interval: Optional[int] = None):
        super().__init__(clock, purge_interval)
        self._session_factory = session_factory

    def set(self, key, value, ttl):
        db = self._session_factory()
        try:
            entry = db.get(EphemeralEntry, key)
            if entry is None:
                entry = EphemeralEntry(key=key)
            entry.value = json.dumps(value)
            entry.expires_at = utcnow() + timedelta(seconds=ttl)
            db.add(entry); db.commit()
        finally:
            db.close()
        if self._purge_due():
            removed = self.purge_expired()
            if removed:
                logger.debug("Purged %d expired ephemeral entries", removed)

    def get(self, key):
        db = self._session_factory()
        try:
            entry = db.get(EphemeralEntry, key)
            if entry is None:
                return None
            if entry.expires_at <= utcnow():
                db.delete(entry); db.commit()
                return None
            return json.loads(entry.value)
        finally:
            db.close()

    def delete(self, key):
        db = self._session_factory()
        try:
            db.query(EphemeralEntry).filter(EphemeralEntry.key == key).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def take(self, key):
        db = self._session_factory()
        try:
            entry = db.get(EphemeralEntry, key)
            if entry is None:
                return None
            raw, expires_at = entry.value, entry.expires_at
            # Conditional delete: only one concurrent caller removes the row
            removed = (
                db.query(EphemeralEntry)
                .filter(EphemeralEntry.key == key, EphemeralEntry.value == raw)
                .delete(synchronize_session=False)
            )
            db.commit()
            if removed != 1 or expires_at <= utcnow():
                return None
            return json.loads(raw)
        finally:
            db.close()

    def purge_expired(self) -> int:
        db = self._session_factory()
        try:
            removed = (
                db.query(EphemeralEntry)
                .filter(EphemeralEntry.expires_at <= utcnow())
                .delete(synchronize_session=False)
            )
            db.commit()
            return removed
        finally:
            db.close()


_store: Optional[ChallengeStore] = None


def get_challenge_store() -> ChallengeStore:
    global _store
    if _store is None:
        if config.CHALLENGE_STORE_BACKEND == "memory":
            logger.warning("Using in-process challenge store; run a single worker")
            _store = MemoryChallengeStore()
        else:
            _store = DatabaseChallengeStore()
    return _store
