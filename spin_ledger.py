"""Once-per-window claim ledger that banks spins per identity.

``SpinLedger`` gates claims by local calendar day. ``EmailSpinLedger`` gates
them through an email claim registry (retention window or forever). Both share
the same claim/consume/state contract:

- a claim within the debounce window of the previous attempt is refused and
  only the attempt time is recorded;
- at most one successful claim per identity per gating window;
- consume never goes below zero and is the only way to authorize a spin;
- storage failures refuse the operation; they never grant a spin.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from errors import DebounceRejected, StorageUnavailable


logger = logging.getLogger(__name__)

STORAGE_KEY = "spin_state_v1"
CLAIM_DEBOUNCE = timedelta(seconds=2)

CLAIMED = "claimed"
ALREADY_CLAIMED = "already_claimed"
RETRY_LATER = "retry_later"
CONSUMED = "consumed"
NO_SPIN_BANKED = "no_spin_banked"
STORAGE_UNAVAILABLE = "storage_unavailable"

MESSAGES = {
    CLAIMED: "1 spin unlocked!",
    ALREADY_CLAIMED: "Already claimed today. Come back tomorrow.",
    RETRY_LATER: "Please wait a moment.",
    STORAGE_UNAVAILABLE: "Spin storage is unavailable",
}


def _local(now: datetime, tz=None) -> datetime:
    if tz is None and now.tzinfo is None:
        return now
    return now.astimezone(tz)


def day_key(now: datetime, tz=None) -> str:
    """YYYY-MM-DD of ``now`` on the local wall clock."""
    return _local(now, tz).strftime("%Y-%m-%d")


def next_local_midnight(now: datetime, tz=None) -> datetime:
    local = _local(now, tz)
    return datetime.combine(local.date() + timedelta(days=1), time(0, 0), tzinfo=local.tzinfo)


def to_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def _non_negative_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value != value or value in (float("inf"), float("-inf")):
        return 0
    return max(0, int(value))


@dataclass
class LedgerState:
    spins_banked: int = 0
    last_claim_day: str = ""
    last_claim_at: int = 0
    last_attempt_at: int = 0

    @classmethod
    def from_dict(cls, raw) -> "LedgerState":
        raw = raw if isinstance(raw, dict) else {}
        day = raw.get("lastClaimDay")
        return cls(
            spins_banked=_non_negative_int(raw.get("spinsBanked")),
            last_claim_day=day if isinstance(day, str) else "",
            last_claim_at=_non_negative_int(raw.get("lastClaimAt")),
            last_attempt_at=_non_negative_int(raw.get("lastAttemptAt")),
        )

    def to_dict(self) -> dict:
        return {
            "spinsBanked": self.spins_banked,
            "lastClaimDay": self.last_claim_day,
            "lastClaimAt": self.last_claim_at,
            "lastAttemptAt": self.last_attempt_at,
        }


@dataclass(frozen=True)
class ClaimResult:
    ok: bool
    spins_banked: int | None
    reason: str

    @property
    def message(self) -> str:
        return MESSAGES.get(self.reason, "")


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    spins_banked: int | None
    reason: str


@dataclass(frozen=True)
class LedgerStatus:
    spins_banked: int
    claimed_today: bool
    next_claim_at: datetime | None
    available: bool = True


class SpinLedger:
    def __init__(self, storage, tz=None, debounce: timedelta = CLAIM_DEBOUNCE, key_prefix=STORAGE_KEY):
        self.storage = storage
        self.tz = tz
        self.debounce_ms = int(debounce.total_seconds() * 1000)
        self.key_prefix = key_prefix
        self._in_flight = set()
        self._in_flight_guard = threading.Lock()

    def key(self, identity: str) -> str:
        return f"{self.key_prefix}:{identity}"

    # gate hooks

    def _claimed(self, identity, state: LedgerState, now) -> bool:
        return state.last_claim_day == day_key(now, self.tz)

    def _reserve(self, identity, state: LedgerState, now) -> bool:
        return not self._claimed(identity, state, now)

    def _next_claim_at(self, identity, state: LedgerState, now):
        return next_local_midnight(now, self.tz)

    # plumbing

    @contextmanager
    def _exclusive(self, identity):
        with self._in_flight_guard:
            if identity in self._in_flight:
                raise DebounceRejected()
            self._in_flight.add(identity)
        try:
            with self.storage.lock(self.key(identity)):
                yield
        finally:
            with self._in_flight_guard:
                self._in_flight.discard(identity)

    def _load(self, identity) -> LedgerState:
        return LedgerState.from_dict(self.storage.load(self.key(identity)))

    def _save(self, identity, state: LedgerState):
        self.storage.save(self.key(identity), state.to_dict())

    # operations

    def claim(self, identity: str, now: datetime) -> ClaimResult:
        now_ms = to_ms(now)
        try:
            with self._exclusive(identity):
                state = self._load(identity)

                if state.last_attempt_at > 0 and now_ms - state.last_attempt_at < self.debounce_ms:
                    state.last_attempt_at = now_ms
                    self._save(identity, state)
                    return ClaimResult(False, state.spins_banked, RETRY_LATER)

                state.last_attempt_at = now_ms

                if not self._reserve(identity, state, now):
                    self._save(identity, state)
                    return ClaimResult(False, state.spins_banked, ALREADY_CLAIMED)

                state.spins_banked += 1
                state.last_claim_day = day_key(now, self.tz)
                state.last_claim_at = now_ms
                self._save(identity, state)
        except DebounceRejected:
            return ClaimResult(False, None, RETRY_LATER)
        except StorageUnavailable as e:
            logger.warning("Claim for %s refused, storage unavailable: %s", identity, e.message)
            return ClaimResult(False, 0, STORAGE_UNAVAILABLE)

        logger.info("Spin claimed for %s (banked=%d)", identity, state.spins_banked)
        return ClaimResult(True, state.spins_banked, CLAIMED)

    def consume(self, identity: str, now: datetime) -> ConsumeResult:
        try:
            with self._exclusive(identity):
                state = self._load(identity)
                if state.spins_banked <= 0:
                    return ConsumeResult(False, 0, NO_SPIN_BANKED)
                state.spins_banked -= 1
                self._save(identity, state)
        except DebounceRejected:
            return ConsumeResult(False, None, RETRY_LATER)
        except StorageUnavailable as e:
            logger.warning("Consume for %s refused, storage unavailable: %s", identity, e.message)
            return ConsumeResult(False, 0, STORAGE_UNAVAILABLE)
        return ConsumeResult(True, state.spins_banked, CONSUMED)

    def state(self, identity: str, now: datetime) -> LedgerStatus:
        try:
            state = self._load(identity)
            claimed = self._claimed(identity, state, now)
            next_at = self._next_claim_at(identity, state, now) if claimed else None
        except StorageUnavailable as e:
            logger.warning("Ledger state for %s unavailable: %s", identity, e.message)
            return LedgerStatus(0, False, None, available=False)
        return LedgerStatus(state.spins_banked, claimed, next_at)


class EmailSpinLedger(SpinLedger):
    """Ledger keyed by normalized email; the registry decides whether a claim is new."""

    def __init__(self, storage, registry, **kwargs):
        super().__init__(storage, **kwargs)
        self.registry = registry

    def _claimed(self, identity, state, now):
        return self.registry.contains(identity, now)

    def _reserve(self, identity, state, now):
        return self.registry.reserve(identity, now)

    def _next_claim_at(self, identity, state, now):
        return self.registry.next_claim_at(identity, now)
