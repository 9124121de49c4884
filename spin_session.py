"""One identity's claim -> spin flow.

A ``SpinSession`` owns what would otherwise be page-global state: the wheel's
current rotation, the unlock gate, the in-flight guards and the last successful
claim for redisplay. Build one per page load (or per request, or per test).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from email_rules import TLD_UNAVAILABLE, validate_email
from errors import (
    AlreadyClaimed,
    DebounceRejected,
    InvalidRotation,
    NoSpinBanked,
    StorageUnavailable,
    TldUnavailable,
    ValidationError,
)
from spin_ledger import EmailSpinLedger, RETRY_LATER, STORAGE_UNAVAILABLE, to_ms
from wheel import (
    DEFAULT_PRIZES,
    WheelGeometry,
    check_prizes,
    is_valid_rotation,
    normalize_angle,
    weighted_pick,
)


logger = logging.getLogger(__name__)

RECENT_WINS_LIMIT = 6
REDISPLAY_WINDOW = timedelta(seconds=2)


@dataclass(frozen=True)
class WinRecord:
    label: str
    time: int

    def to_dict(self):
        return {"label": self.label, "time": self.time}


class RecentWins:
    """Display-only list of the latest wins, newest first."""

    def __init__(self, storage, key: str, limit: int = RECENT_WINS_LIMIT):
        self.storage = storage
        self.key = f"recent_wins:{key}"
        self.limit = limit

    def load(self) -> list:
        try:
            record = self.storage.load(self.key) or {}
        except StorageUnavailable as e:
            logger.warning("Recent wins unavailable: %s", e.message)
            return []
        wins = []
        for item in (record.get("wins") or [])[: self.limit]:
            if isinstance(item, dict) and isinstance(item.get("label"), str):
                wins.append(WinRecord(item["label"], int(item.get("time") or 0)))
        return wins

    def add(self, label: str, now: datetime) -> list:
        wins = [WinRecord(label, to_ms(now))] + self.load()
        wins = wins[: self.limit]
        try:
            self.storage.save(self.key, {"wins": [w.to_dict() for w in wins]})
        except StorageUnavailable as e:
            logger.warning("Recent wins not saved: %s", e.message)
        return wins


@dataclass(frozen=True)
class ClaimOutcome:
    email: str
    identity: str
    spins_banked: int
    message: str
    redisplayed: bool = False


@dataclass(frozen=True)
class SpinOutcome:
    target_index: int
    winner_index: int
    prize: object
    plan: object
    spins_banked: int
    recent_wins: list


class SpinSession:
    def __init__(
        self,
        ledger,
        tlds,
        identity: str | None = None,
        prizes=DEFAULT_PRIZES,
        rng=None,
        win_storage=None,
        wins_key: str | None = None,
        rotation: float = 0.0,
        clock=None,
    ):
        self.ledger = ledger
        self.tlds = tlds
        self.identity = identity
        self.prizes = check_prizes(prizes)
        self.geometry = WheelGeometry(len(self.prizes))
        self.rng = rng
        self.win_storage = win_storage if win_storage is not None else ledger.storage
        self.wins_key = wins_key
        self.clock = clock or (lambda: datetime.now().astimezone())

        self.rotation = rotation
        self.unlocked = False
        self.active_identity = identity
        self._last_claim = None
        self._last_claim_at = None
        self._claim_lock = threading.Lock()
        self._spin_lock = threading.Lock()

    @property
    def email_scoped(self) -> bool:
        return isinstance(self.ledger, EmailSpinLedger)

    def _recent_wins(self, identity) -> RecentWins:
        return RecentWins(self.win_storage, self.wins_key or identity or "anonymous")

    def recent_wins(self) -> list:
        return self._recent_wins(self.active_identity).load()

    def claim(self, email, now: datetime | None = None) -> ClaimOutcome:
        if not self._claim_lock.acquire(blocking=False):
            raise DebounceRejected("Already checking your email.")
        try:
            return self._claim(email, now or self.clock())
        finally:
            self._claim_lock.release()

    def _claim(self, email, now):
        if not self.tlds.loaded:
            self.unlocked = False
            raise TldUnavailable()

        check = validate_email(email, self.tlds)
        if not check.ok:
            self.unlocked = False
            if check.error == TLD_UNAVAILABLE:
                raise TldUnavailable()
            raise ValidationError(check.message, reason=check.error)
        email = check.normalized

        last = self._last_claim
        if last and self.unlocked and last.email == email and now - self._last_claim_at < REDISPLAY_WINDOW:
            return replace(last, redisplayed=True)

        identity = self.identity or email
        result = self.ledger.claim(identity, now)
        if not result.ok:
            if result.reason == RETRY_LATER:
                raise DebounceRejected()
            if result.reason == STORAGE_UNAVAILABLE:
                self.unlocked = False
                raise StorageUnavailable()
            self.unlocked = False
            if self.email_scoped:
                raise AlreadyClaimed(
                    "This email was already used.", spins_banked=result.spins_banked, code="EMAIL_USED"
                )
            raise AlreadyClaimed(spins_banked=result.spins_banked)

        self.active_identity = identity
        self.unlocked = True
        outcome = ClaimOutcome(email, identity, result.spins_banked, result.message)
        self._last_claim = outcome
        self._last_claim_at = now
        return outcome

    def spin(self, now: datetime | None = None) -> SpinOutcome:
        if not self._spin_lock.acquire(blocking=False):
            raise DebounceRejected("A spin is already running.")
        try:
            return self._spin(now or self.clock())
        finally:
            self._spin_lock.release()

    def _spin(self, now):
        identity = self.active_identity
        if not identity:
            raise NoSpinBanked()
        # Checked before consume so a bad rotation never costs a banked spin.
        if not is_valid_rotation(self.rotation):
            raise InvalidRotation()

        result = self.ledger.consume(identity, now)
        if not result.ok:
            if result.reason == RETRY_LATER:
                raise DebounceRejected()
            if result.reason == STORAGE_UNAVAILABLE:
                raise StorageUnavailable()
            raise NoSpinBanked()

        target = weighted_pick(self.prizes, self.rng)
        plan = self.geometry.plan_spin(target, self.rotation, self.rng)
        winner = self.geometry.decode(plan.final_rotation)
        if winner != target:
            logger.warning(
                "Drawn prize %d (%s) differs from decoded prize %d (%s) at angle %.6f; showing decoded",
                target,
                self.prizes[target].label,
                winner,
                self.prizes[winner].label,
                normalize_angle(plan.final_rotation),
            )

        self.rotation = plan.final_rotation
        prize = self.prizes[winner]
        wins = self._recent_wins(identity).add(prize.label, now)

        # Next spin needs a fresh claim.
        self.unlocked = False
        self._last_claim = None
        if self.identity is None:
            self.active_identity = None

        return SpinOutcome(target, winner, prize, plan, result.spins_banked, wins)
