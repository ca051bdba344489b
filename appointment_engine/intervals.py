"""Pure helpers over half-open time ranges.

Inputs are assumed well formed (start < end); callers validate before
handing ranges in.
"""
from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from .models import TimeRange


class Span(Protocol):
    start: object
    end: object


def overlaps(a: Span, b: Span) -> bool:
    """True iff [a.start, a.end) and [b.start, b.end) share an instant."""
    return a.start < b.end and b.start < a.end


def contains(outer: Span, inner: Span) -> bool:
    return outer.start <= inner.start and inner.end <= outer.end


def merge(intervals: Iterable[Span]) -> list[TimeRange]:
    """Coalesce overlapping or touching ranges into a minimal ordered list."""
    ordered = sorted(intervals, key=lambda iv: (iv.start, iv.end))
    if not ordered:
        return []

    merged: list[TimeRange] = []
    current_start, current_end = ordered[0].start, ordered[0].end
    for iv in ordered[1:]:
        if iv.start <= current_end:
            if iv.end > current_end:
                current_end = iv.end
        else:
            merged.append(TimeRange(start=current_start, end=current_end))
            current_start, current_end = iv.start, iv.end
    merged.append(TimeRange(start=current_start, end=current_end))
    return merged


def overlaps_any(candidate: Span, others: Iterable[Span]) -> bool:
    return any(overlaps(candidate, other) for other in others)
