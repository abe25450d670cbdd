"""
tracking/milestones.py — Multiplier ladder evaluation.

A ladder is an ascending list of thresholds (2×, 4×, 10×, ...). Evaluation is
pure: given the entry value, the current value and the thresholds already
hit, return the thresholds crossed for the first time, ascending.

Re-running with the returned thresholds folded into `already_hit` and the same
current value yields nothing, which is what makes a retried tick safe.
"""

from __future__ import annotations

from typing import Iterable, Optional


def parse_ladder(raw: str, low: Optional[float] = None, high: Optional[float] = None) -> list[float]:
    """
    Parse "2,3,4" into [2.0, 3.0, 4.0]. Values outside (low, high) and
    non-numeric entries are dropped.
    """
    values = set()
    for item in str(raw or "").split(","):
        item = item.strip().lower().rstrip("x")
        if not item:
            continue
        try:
            value = float(item)
        except ValueError:
            continue
        if low is not None and value <= low:
            continue
        if high is not None and value >= high:
            continue
        values.add(value)
    return sorted(values)


def build_high_ladder(start: float = 10, step: float = 10, maximum: float = 5000) -> list[float]:
    """10, 20, ... up to maximum. step=1 gives every integer multiple."""
    if step <= 0 or start <= 0:
        return []
    ladder = []
    value = float(start)
    while value <= maximum:
        ladder.append(value)
        value += step
    return ladder


def evaluate_milestones(
    entry_value: Optional[float],
    current_value: Optional[float],
    ladder: Iterable[float],
    already_hit: Iterable[float],
    tolerance: float = 0.0,
) -> list[float]:
    if not entry_value or entry_value <= 0 or current_value is None:
        return []

    multiple = current_value / entry_value
    seen = {float(m) for m in already_hit}
    hits = []
    for threshold in sorted({float(t) for t in ladder}):
        if threshold in seen:
            continue
        if multiple >= threshold * (1 - tolerance):
            hits.append(threshold)
            seen.add(threshold)
    return hits


def evaluate_ladders(
    entry_value: Optional[float],
    current_value: Optional[float],
    ladders: Iterable[Iterable[float]],
    already_hit: Iterable[float],
    tolerance: float = 0.0,
) -> list[float]:
    """Evaluate several ladders against one shared hit set."""
    seen = {float(m) for m in already_hit}
    hits = []
    for ladder in ladders:
        new = evaluate_milestones(entry_value, current_value, ladder, seen, tolerance)
        seen.update(new)
        hits.extend(new)
    return sorted(hits)
