"""Prize table, weighted draw and wheel geometry.

Segment i spans [i * seg, (i + 1) * seg) from the drawing origin (3 o'clock).
The pointer sits at 12 o'clock. ``decode`` is the authoritative answer to
"which prize is under the pointer"; callers display that index even when it
differs from the drawn one.
"""

from __future__ import annotations

import json
import math
import random
from dataclasses import dataclass


TAU = math.pi * 2
POINTER_ANGLE = -math.pi / 2
DRAW_OFFSET = 0.0

MIN_EXTRA_TURNS = 4
MAX_EXTRA_TURNS = 7
JITTER_FRACTION = 0.35
MIN_DURATION = 4.2
MAX_DURATION = 5.0

# Larger rotations lose the sub-segment precision encode/decode rely on.
MAX_ROTATION = 1e6


@dataclass(frozen=True)
class Prize:
    label: str
    weight: float

    def to_dict(self):
        return {"label": self.label, "weight": self.weight}


DEFAULT_PRIZES = (
    Prize("80% off", 0.4),
    Prize("3% off", 35),
    Prize("5% off", 30),
    Prize("10% off", 20),
    Prize("15% off", 10),
    Prize("25% off", 4.6),
)


def check_prizes(prizes) -> tuple:
    prizes = tuple(prizes)
    if not prizes:
        raise ValueError("Prize table is empty")
    for p in prizes:
        if not (isinstance(p.weight, (int, float)) and p.weight > 0):
            raise ValueError(f"Prize {p.label!r} needs a positive weight")
    return prizes


def load_prizes(path) -> tuple:
    """Read a JSON array of ``{"label", "weight"}`` objects."""
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ValueError("Prize file is not a JSON array")
    return check_prizes(Prize(str(item["label"]), float(item["weight"])) for item in raw)


def weighted_pick(prizes, rng=None) -> int:
    """Index of a prize drawn with probability weight / total.

    The last index absorbs any floating point slack at the upper boundary, so
    prize order decides which segment wins a rounding tie.
    """
    rng = rng or random
    total = sum(p.weight for p in prizes)
    roll = rng.random() * total
    acc = 0.0
    for i, p in enumerate(prizes):
        acc += p.weight
        if acc >= roll:
            return i
    return len(prizes) - 1


def normalize_angle(angle: float) -> float:
    """Map any angle into [0, TAU)."""
    a = angle % TAU
    # -tiny % TAU rounds up to exactly TAU.
    if a >= TAU:
        return 0.0
    return a


def is_valid_rotation(rotation) -> bool:
    return (
        isinstance(rotation, (int, float))
        and not isinstance(rotation, bool)
        and math.isfinite(rotation)
        and abs(rotation) <= MAX_ROTATION
    )


def ease_out_cubic(t: float) -> float:
    return 1 - (1 - t) ** 3


@dataclass(frozen=True)
class SpinPlan:
    target_index: int
    start_rotation: float
    final_rotation: float
    duration: float

    def rotation_at(self, elapsed: float) -> float:
        return rotation_at(self.start_rotation, self.final_rotation, elapsed, self.duration)

    def finished(self, elapsed: float) -> bool:
        return elapsed >= self.duration


def rotation_at(start: float, final: float, elapsed: float, duration: float) -> float:
    """Rotation shown ``elapsed`` seconds into an animation of ``duration``."""
    if duration <= 0 or elapsed >= duration:
        return final
    t = max(elapsed / duration, 0.0)
    return start + (final - start) * ease_out_cubic(t)


class WheelGeometry:
    def __init__(self, segment_count: int, pointer_angle=POINTER_ANGLE, draw_offset=DRAW_OFFSET):
        if segment_count < 1:
            raise ValueError("A wheel needs at least one segment")
        self.segment_count = segment_count
        self.segment_angle = TAU / segment_count
        self.pointer_angle = pointer_angle
        self.draw_offset = draw_offset

    def segment_mid(self, index: int) -> float:
        return index * self.segment_angle + self.segment_angle / 2

    def encode(self, target_index: int, current_rotation: float, rng=None) -> float:
        """Final rotation that rests ``target_index`` under the pointer.

        Adds 4-7 whole turns and up to +/-35% of a segment of jitter. The result
        is always ahead of ``current_rotation``.
        """
        if not is_valid_rotation(current_rotation):
            raise ValueError(f"Rotation out of range: {current_rotation!r}")
        rng = rng or random
        desired = normalize_angle(self.pointer_angle - (self.segment_mid(target_index) + self.draw_offset))
        turns = rng.randint(MIN_EXTRA_TURNS, MAX_EXTRA_TURNS)
        jitter = (rng.random() * 2 * JITTER_FRACTION - JITTER_FRACTION) * self.segment_angle

        delta = desired - normalize_angle(current_rotation)
        if delta < 0:
            delta += TAU
        delta += turns * TAU + jitter
        return current_rotation + delta

    def decode(self, rotation: float) -> int:
        under_pointer = normalize_angle(self.pointer_angle - (rotation + self.draw_offset))
        index = math.floor(under_pointer / self.segment_angle)
        return min(max(index, 0), self.segment_count - 1)

    def plan_spin(self, target_index: int, current_rotation: float, rng=None) -> SpinPlan:
        rng = rng or random
        final = self.encode(target_index, current_rotation, rng)
        duration = MIN_DURATION + rng.random() * (MAX_DURATION - MIN_DURATION)
        return SpinPlan(target_index, current_rotation, final, duration)


def simulate_spins(prizes, count: int = 1000, rng=None) -> list:
    """Decoded-outcome frequencies for ``count`` spins starting at rest."""
    geometry = WheelGeometry(len(prizes))
    freq = [0] * len(prizes)
    for _ in range(count):
        target = weighted_pick(prizes, rng)
        freq[geometry.decode(geometry.encode(target, 0.0, rng))] += 1
    return freq
