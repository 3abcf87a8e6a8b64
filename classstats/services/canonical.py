"""Canonical attempt selection and the deltas a canonical change implies.

Everything here is pure: callers load the current canonical entry, ask for a
:class:`CanonicalChange`, and hand the change to the aggregate updater.

Selection policy on finalize / edit (per student, per schedule):

- no canonical yet           → the attempt becomes canonical (first canonical)
- score strictly greater     → replace
- score equal                → keep the incumbent (attempt id is not churned)
- score lower                → keep the incumbent

Overall-score math: ``(next_pct - prev_pct) * contribution`` where
``pct(score, max) = score / max`` (0 when ``max <= 0``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from classstats.db.models import SUBJECT, TOPIC


def pct(score: float | None, max_score: float | None) -> float:
    """Fraction scored; 0 when the maximum is missing or not positive."""
    s = float(score or 0)
    m = float(max_score or 0)
    return s / m if m > 0 else 0.0


@dataclass(frozen=True)
class CanonicalEntry:
    """Snapshot of the attempt that represents a student for one schedule."""

    attempt_id: str
    score: float
    max_score: float
    finished_at: datetime
    subject: str | None = None
    topic: str | None = None

    def label(self, dimension: str) -> str | None:
        return self.subject if dimension == SUBJECT else self.topic

    @property
    def pct(self) -> float:
        return pct(self.score, self.max_score)


@dataclass(frozen=True)
class BucketDelta:
    """Change to apply to one subject/topic bucket."""

    dimension: str
    label: str
    sum_score: float
    sum_max: float
    attempts: int


@dataclass(frozen=True)
class CanonicalChange:
    """Transition of one schedule's canonical slot from ``previous`` to ``next``."""

    previous: CanonicalEntry | None
    next: CanonicalEntry | None

    @property
    def replaces(self) -> bool:
        """True when the stored canonical entry has to be rewritten or removed."""
        return self.previous != self.next

    @property
    def is_first_canonical(self) -> bool:
        return self.previous is None and self.next is not None

    @property
    def clears_slot(self) -> bool:
        return self.previous is not None and self.next is None

    @property
    def participation_delta(self) -> int:
        if self.is_first_canonical:
            return 1
        if self.clears_slot:
            return -1
        return 0

    @property
    def delta_score(self) -> float:
        return _score(self.next) - _score(self.previous)

    @property
    def delta_max(self) -> float:
        return _max(self.next) - _max(self.previous)

    def delta_overall(self, contribution: float) -> float:
        prev_pct = self.previous.pct if self.previous else 0.0
        next_pct = self.next.pct if self.next else 0.0
        return (next_pct - prev_pct) * contribution

    def bucket_deltas(self) -> list[BucketDelta]:
        return list(_iter_bucket_deltas(self))


def _score(entry: CanonicalEntry | None) -> float:
    return float(entry.score) if entry else 0.0


def _max(entry: CanonicalEntry | None) -> float:
    return float(entry.max_score) if entry else 0.0


def _iter_bucket_deltas(change: CanonicalChange) -> Iterator[BucketDelta]:
    prev, nxt = change.previous, change.next
    if prev == nxt:
        return
    for dimension in (SUBJECT, TOPIC):
        prev_label = prev.label(dimension) if prev else None
        next_label = nxt.label(dimension) if nxt else None

        if prev is not None and nxt is not None and prev_label == next_label:
            # Same bucket on both sides: only the score/max difference moves
            if prev_label and (change.delta_score or change.delta_max):
                yield BucketDelta(
                    dimension, prev_label, change.delta_score, change.delta_max, 0
                )
            continue

        # Slot gained, slot cleared, or replacement crossing buckets
        if prev is not None and prev_label:
            yield BucketDelta(dimension, prev_label, -prev.score, -prev.max_score, -1)
        if nxt is not None and next_label:
            yield BucketDelta(dimension, next_label, nxt.score, nxt.max_score, 1)


def select_on_finalize(
    current: CanonicalEntry | None, candidate: CanonicalEntry
) -> CanonicalChange:
    """Decide whether a freshly finalized attempt replaces the current canonical."""
    if current is None:
        return CanonicalChange(previous=None, next=candidate)
    if candidate.score > current.score:
        return CanonicalChange(previous=current, next=candidate)
    # Tie keeps the incumbent; a worse attempt never displaces it
    return CanonicalChange(previous=current, next=current)


def select_after_edit(
    current: CanonicalEntry,
    edited: CanonicalEntry | None,
    best_other: CanonicalEntry | None,
) -> CanonicalChange:
    """Re-select after the incumbent canonical attempt itself changed.

    ``edited`` is the incumbent's new view (``None`` when it is no longer
    valid); ``best_other`` is the best valid attempt among the others. The
    incumbent keeps the slot on ties.
    """
    if edited is None:
        return CanonicalChange(previous=current, next=best_other)
    if best_other is not None and best_other.score > edited.score:
        return CanonicalChange(previous=current, next=best_other)
    return CanonicalChange(previous=current, next=edited)


def removal(current: CanonicalEntry) -> CanonicalChange:
    """Change that clears a slot outright (schedule reversal)."""
    return CanonicalChange(previous=current, next=None)
