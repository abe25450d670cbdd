"""
tracking/drawdown.py — One-time "dumped from peak" detection.

The alert is at-most-once per call: once `dump_alerted` latches it never
re-arms, even if the token recovers to a new peak and dumps again.
"""

from __future__ import annotations

from typing import Optional


def drawdown_from_peak(peak_value: Optional[float], current_value: Optional[float]) -> float:
    """0.0 = at peak, 0.56 = 56% below peak."""
    if not peak_value or peak_value <= 0 or current_value is None:
        return 0.0
    return max(0.0, (peak_value - current_value) / peak_value)


def dump_fires(
    peak_value: Optional[float],
    current_value: Optional[float],
    drawdown_fraction: float,
    already_alerted: bool,
) -> bool:
    if already_alerted or drawdown_fraction <= 0:
        return False
    if not peak_value or peak_value <= 0 or current_value is None:
        return False
    return current_value <= (1 - drawdown_fraction) * peak_value
