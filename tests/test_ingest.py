"""Tests for the event ingestion gate and the attempt → aggregate pipeline."""

from contextlib import contextmanager
from unittest.mock import patch

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import Select

from classstats.core.errors import DuplicateEventError, MalformedEventError
from classstats.db.models import (
    AttemptAudit,
    CanonicalAttempt,
    ProcessedEvent,
    ScheduleItem,
    ScheduleStat,
    StatBucket,
    StudentClassStat,
)
from classstats.services import corrections
from classstats.services.canonical import pct
from classstats.services.ingest import IngestOutcome, process_quiz_event


# ── Helpers ────────────────────────────────────────────────────────────────────


def _attempt(
    event_id: str,
    attempt_id: str,
    score=8,
    max_score=10,
    *,
    version: int = 1,
    type: str = "AttemptFinalized",
    finished_at: str = "2024-03-01T02:00:00Z",
    student_id: str = "u1",
    schedule_id: str = "s1",
    class_id: str | None = "c1",
    **extra,
) -> dict:
    evt = {
        "eventId": event_id,
        "type": type,
        "occurredAt": finished_at,
        "attemptId": attempt_id,
        "attemptVersion": version,
        "quizId": "q1",
        "quizRootId": "q1",
        "classId": class_id,
        "scheduleId": schedule_id,
        "studentId": student_id,
        "finishedAt": finished_at,
        "score": score,
        "maxScore": max_score,
    }
    evt.update(extra)
    return evt


def _invalidate(event_id: str, attempt_id: str, version: int = 2, **kw) -> dict:
    return _attempt(
        event_id, attempt_id, None, None, version=version, type="AttemptInvalidated", **kw
    )


def _stat(db: Session, student_id: str = "u1") -> StudentClassStat | None:
    return db.scalar(
        select(StudentClassStat).where(
            StudentClassStat.class_id == "c1", StudentClassStat.student_id == student_id
        )
    )


def _bucket(db: Session, stat: StudentClassStat, dimension: str, label: str) -> StatBucket | None:
    return db.scalar(
        select(StatBucket).where(
            StatBucket.stat_id == stat.id,
            StatBucket.dimension == dimension,
            StatBucket.label == label,
        )
    )


def _assert_consistent(db: Session, stat: StudentClassStat) -> None:
    """Stored aggregates equal a from-scratch recomputation over canonical entries."""
    rows = db.scalars(select(CanonicalAttempt).where(CanonicalAttempt.stat_id == stat.id)).all()
    contributions = {s.id: s.contribution for s in db.scalars(select(ScheduleItem)).all()}
    assert stat.participation_count == len(rows)
    assert stat.sum_score == pytest.approx(sum(r.score for r in rows))
    assert stat.sum_max == pytest.approx(sum(r.max_score for r in rows))
    assert stat.overall_score == pytest.approx(
        sum(pct(r.score, r.max_score) * contributions.get(r.schedule_id, 0) for r in rows)
    )
    assert stat.best_streak_days >= stat.streak_days


def _ingest(db: Session, evt: dict) -> IngestOutcome:
    return process_quiz_event(db, evt).outcome


@contextmanager
def _capture_pg_selects(engine):
    """SELECTs issued on *engine*, rendered as PostgreSQL would receive them."""
    statements: list[str] = []

    def _record(conn, clauseelement, *args):
        if isinstance(clauseelement, Select):
            statements.append(str(clauseelement.compile(dialect=postgresql.dialect())))

    event.listen(engine, "before_execute", _record)
    try:
        yield statements
    finally:
        event.remove(engine, "before_execute", _record)


# ── Canonical scenarios ────────────────────────────────────────────────────────


class TestFinalizeScenarios:
    def test_first_attempt_becomes_canonical(self, db: Session, schedule):
        assert _ingest(db, _attempt("e1", "a1", 8, 10)) is IngestOutcome.APPLIED

        stat = _stat(db)
        assert stat.participation_count == 1
        assert stat.sum_score == 8
        assert stat.sum_max == 10
        assert stat.overall_score == pytest.approx(80)
        assert stat.canonical_by_schedule["s1"].attempt_id == "a1"

        sched = db.scalar(select(ScheduleStat).where(ScheduleStat.schedule_id == "s1"))
        assert sched.participants == 1
        assert (sched.sum_score, sched.sum_max) == (8, 10)
        assert stat.by_subject["Math"].attempts == 1
        assert stat.by_topic["Fractions"].sum_score == 8
        _assert_consistent(db, stat)

    def test_worse_reattempt_changes_nothing(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 6, 10))

        stat = _stat(db)
        assert stat.canonical_by_schedule["s1"].attempt_id == "a1"
        assert (stat.sum_score, stat.sum_max, stat.participation_count) == (8, 10, 1)
        assert stat.overall_score == pytest.approx(80)
        sched = db.scalar(select(ScheduleStat).where(ScheduleStat.schedule_id == "s1"))
        assert sched.participants == 1

    def test_better_reattempt_replaces(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 6, 10))
        _ingest(db, _attempt("e3", "a3", 9, 10))

        stat = _stat(db)
        assert stat.canonical_by_schedule["s1"].attempt_id == "a3"
        assert (stat.sum_score, stat.sum_max, stat.participation_count) == (9, 10, 1)
        assert stat.overall_score == pytest.approx(90)
        assert stat.by_subject["Math"].sum_score == 9
        assert stat.by_subject["Math"].attempts == 1
        sched = db.scalar(select(ScheduleStat).where(ScheduleStat.schedule_id == "s1"))
        assert (sched.participants, sched.sum_score) == (1, 9)
        _assert_consistent(db, stat)

    def test_equal_score_keeps_incumbent(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 8, 10, finished_at="2024-03-02T02:00:00Z"))
        assert _stat(db).canonical_by_schedule["s1"].attempt_id == "a1"

    def test_labels_fall_back_to_schedule_snapshot(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        canonical = _stat(db).canonical_by_schedule["s1"]
        assert (canonical.subject, canonical.topic) == ("Math", "Fractions")

    def test_replacement_across_subjects_moves_buckets(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 9, 10, subject="Science"))

        stat = _stat(db)
        assert "Math" not in stat.by_subject
        assert stat.by_subject["Science"].sum_score == 9
        assert stat.by_subject["Science"].attempts == 1
        # Topic label unchanged: only the difference moved
        assert stat.by_topic["Fractions"].sum_score == 9
        assert stat.by_topic["Fractions"].attempts == 1

    def test_nested_payload_is_accepted(self, db: Session, schedule):
        evt = _attempt("e1", "a1")
        payload = {k: evt.pop(k) for k in ("score", "maxScore", "finishedAt")}
        evt["payload"] = payload
        assert _ingest(db, evt) is IngestOutcome.APPLIED
        assert _stat(db).sum_score == 8


# ── Idempotency & ordering ─────────────────────────────────────────────────────


class TestIdempotencyAndOrdering:
    def test_replay_is_a_noop(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        version = _stat(db).version

        assert _ingest(db, _attempt("e1", "a1", 8, 10)) is IngestOutcome.DUPLICATE
        stat = _stat(db)
        assert stat.version == version
        assert (stat.sum_score, stat.participation_count) == (8, 1)
        assert db.scalar(select(func.count()).select_from(ProcessedEvent)) == 1

    def test_lower_version_is_stale(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10, version=1))
        _ingest(db, _attempt("e2", "a1", 9, 10, version=2))
        outcome = _ingest(db, _attempt("e3", "a1", 4, 10, version=1))

        assert outcome is IngestOutcome.STALE
        assert _stat(db).sum_score == 9
        # Stale events are still recorded so redelivery short-circuits
        assert db.get(ProcessedEvent, "e3") is not None

    def test_out_of_order_edits_converge(self, db: Session, schedule):
        _ingest(db, _attempt("e2", "a1", 5, 10, version=2))
        assert _ingest(db, _attempt("e1", "a1", 9, 10, version=1)) is IngestOutcome.STALE

        stat = _stat(db)
        assert stat.sum_score == 5
        assert stat.overall_score == pytest.approx(50)
        audit = db.get(AttemptAudit, "a1")
        assert (audit.attempt_version, audit.score) == (2, 5)

    def test_same_version_different_outcome_keeps_first(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10, version=1))
        assert _ingest(db, _attempt("e2", "a1", 3, 10, version=1)) is IngestOutcome.STALE
        assert _stat(db).sum_score == 8

    def test_concurrent_claim_rolls_back_everything(self, db: Session, schedule):
        with patch(
            "classstats.services.ledger.try_claim", side_effect=DuplicateEventError("e1")
        ):
            assert _ingest(db, _attempt("e1", "a1")) is IngestOutcome.DUPLICATE

        assert _stat(db) is None
        assert db.get(AttemptAudit, "a1") is None

    def test_aborted_unit_of_work_leaves_no_trace(self, db: Session, schedule):
        with patch(
            "classstats.services.ingest.record_attendance", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(RuntimeError):
                _ingest(db, _attempt("e1", "a1"))

        assert _stat(db) is None
        assert db.get(ProcessedEvent, "e1") is None
        assert db.get(AttemptAudit, "a1") is None

        # Redelivery applies in full
        assert _ingest(db, _attempt("e1", "a1")) is IngestOutcome.APPLIED
        assert _stat(db).sum_score == 8


# ── Malformed / invalid / missing references ──────────────────────────────────


class TestRejectsAndSkips:
    def test_malformed_event_writes_nothing(self, db: Session, schedule):
        evt = _attempt("e1", "a1")
        del evt["studentId"]
        with pytest.raises(MalformedEventError) as exc_info:
            _ingest(db, evt)

        assert exc_info.value.details
        assert db.get(ProcessedEvent, "e1") is None
        assert db.get(AttemptAudit, "a1") is None

        # A corrected resend with the same id still succeeds
        assert _ingest(db, _attempt("e1", "a1")) is IngestOutcome.APPLIED

    def test_unknown_type_is_malformed(self, db: Session):
        with pytest.raises(MalformedEventError):
            _ingest(db, {"eventId": "e1", "type": "SomethingElse"})

    def test_non_object_is_malformed(self, db: Session):
        with pytest.raises(MalformedEventError):
            _ingest(db, ["not", "an", "envelope"])

    def test_non_numeric_score_is_an_invalid_view(self, db: Session, schedule):
        assert _ingest(db, _attempt("e1", "a1", "eight", 10)) is IngestOutcome.APPLIED

        audit = db.get(AttemptAudit, "a1")
        assert audit.valid is False
        assert _stat(db) is None

    def test_missing_class_mirrors_audit_only(self, db: Session):
        outcome = _ingest(db, _attempt("e1", "a1", class_id="ghost", schedule_id="sx"))

        assert outcome is IngestOutcome.SKIPPED
        assert db.get(AttemptAudit, "a1") is not None
        assert db.get(ProcessedEvent, "e1") is not None
        assert db.scalar(select(func.count()).select_from(StudentClassStat)) == 0

    def test_class_resolved_from_schedule_when_absent(self, db: Session, schedule):
        assert _ingest(db, _attempt("e1", "a1", class_id=None)) is IngestOutcome.APPLIED
        assert _stat(db).sum_score == 8

    def test_removed_schedule_mirrors_audit_only(self, db: Session, klass):
        outcome = _ingest(db, _attempt("e1", "a1", schedule_id="gone"))

        assert outcome is IngestOutcome.SKIPPED
        assert db.get(AttemptAudit, "a1").class_id == "c1"
        assert db.get(ProcessedEvent, "e1") is not None
        assert db.scalar(select(func.count()).select_from(CanonicalAttempt)) == 0
        assert db.scalar(select(func.count()).select_from(ScheduleStat)) == 0

    @pytest.mark.parametrize("field", ["eventId", "attemptId", "scheduleId", "studentId", "classId"])
    def test_overlong_id_is_malformed(self, db: Session, schedule, field):
        evt = _attempt("e1", "a1")
        evt[field] = "x" * 65
        with pytest.raises(MalformedEventError):
            _ingest(db, evt)
        assert db.scalar(select(func.count()).select_from(ProcessedEvent)) == 0
        assert db.scalar(select(func.count()).select_from(AttemptAudit)) == 0

    def test_id_at_column_width_is_accepted(self, db: Session, schedule):
        assert _ingest(db, _attempt("e" * 64, "a1")) is IngestOutcome.APPLIED


# ── Invalidation & edits of the canonical attempt ─────────────────────────────


class TestInvalidation:
    def test_invalidating_canonical_promotes_next_best(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 6, 10))
        _ingest(db, _attempt("e3", "a3", 4, 10))

        _ingest(db, _invalidate("e4", "a1"))

        stat = _stat(db)
        assert stat.canonical_by_schedule["s1"].attempt_id == "a2"
        assert (stat.sum_score, stat.participation_count) == (6, 1)
        assert stat.overall_score == pytest.approx(60)
        _assert_consistent(db, stat)

    def test_promotion_prefers_dated_attempt_on_equal_score(self, db: Session, engine, schedule):
        _ingest(db, _attempt("e1", "a1", 9, 10))
        _ingest(db, _attempt("e2", "a2", 6, 10))
        _ingest(db, _attempt("e3", "a3", 6, 10, finished_at=None))

        with _capture_pg_selects(engine) as statements:
            _ingest(db, _invalidate("e4", "a1"))

        assert _stat(db).canonical_by_schedule["s1"].attempt_id == "a2"
        ordered = [sql for sql in statements if "FROM attempt_audit" in sql and "ORDER BY" in sql]
        assert ordered
        assert all("NULLS LAST" in sql for sql in ordered)

    def test_invalidating_last_valid_clears_slot(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _invalidate("e2", "a1"))

        stat = _stat(db)
        assert stat.canonical_by_schedule == {}
        assert (stat.sum_score, stat.sum_max, stat.participation_count) == (0, 0, 0)
        assert stat.overall_score == pytest.approx(0)
        assert stat.by_subject == {}
        assert stat.by_topic == {}
        sched = db.scalar(select(ScheduleStat).where(ScheduleStat.schedule_id == "s1"))
        assert sched.participants == 0
        # Attendance is sticky
        assert "2024-03-01" in stat.attendance_days
        assert stat.streak_days == 1

    def test_invalidating_non_canonical_only_updates_audit(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 6, 10))
        version = _stat(db).version

        _ingest(db, _invalidate("e3", "a2"))

        stat = _stat(db)
        assert stat.version == version
        assert stat.canonical_by_schedule["s1"].attempt_id == "a1"
        assert db.get(AttemptAudit, "a2").valid is False

    def test_finalize_without_score_invalidates_canonical(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        _ingest(db, _attempt("e2", "a2", 5, 10))
        _ingest(db, _attempt("e3", "a1", None, None, version=2))

        stat = _stat(db)
        assert stat.canonical_by_schedule["s1"].attempt_id == "a2"
        assert stat.sum_score == 5

    def test_downward_regrade_of_incumbent(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 9, 10))
        _ingest(db, _attempt("e2", "a2", 7, 10))
        _ingest(db, _attempt("e3", "a1", 5, 10, version=2))

        stat = _stat(db)
        assert stat.canonical_by_schedule["s1"].attempt_id == "a2"
        assert stat.sum_score == 7
        assert stat.overall_score == pytest.approx(70)
        _assert_consistent(db, stat)

    def test_upward_regrade_of_incumbent(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 6, 10))
        _ingest(db, _attempt("e2", "a1", 10, 10, version=2))

        stat = _stat(db)
        assert stat.canonical_by_schedule["s1"].score == 10
        assert stat.overall_score == pytest.approx(100)
        assert stat.by_subject["Math"].attempts == 1


# ── Attendance through the pipeline ────────────────────────────────────────────


class TestAttendancePipeline:
    def test_streak_with_gap(self, db: Session, klass):
        for i, day in enumerate(["01", "02", "03", "05"], start=1):
            sid = f"s{i}"
            db.add(
                ScheduleItem(
                    id=sid, class_id="c1", quiz_id=f"q{i}", quiz_root_id=f"q{i}", contribution=100
                )
            )
            db.commit()
            _ingest(
                db,
                _attempt(f"e{i}", f"a{i}", 5, 10, schedule_id=sid, finished_at=f"2024-03-{day}T02:00:00Z"),
            )

        stat = _stat(db)
        assert stat.streak_days == 1
        assert stat.best_streak_days == 3
        assert sorted(stat.attendance_days) == ["2024-03-01", "2024-03-02", "2024-03-03", "2024-03-05"]
        _assert_consistent(db, stat)

    def test_worse_attempt_still_earns_attendance(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10, finished_at="2024-03-01T02:00:00Z"))
        _ingest(db, _attempt("e2", "a2", 2, 10, finished_at="2024-03-02T02:00:00Z"))

        stat = _stat(db)
        assert stat.streak_days == 2
        assert stat.sum_score == 8

    def test_multiple_students_are_independent(self, db: Session, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10, student_id="u1"))
        _ingest(db, _attempt("e2", "b1", 3, 10, student_id="u2"))

        sched = db.scalar(select(ScheduleStat).where(ScheduleStat.schedule_id == "s1"))
        assert sched.participants == 2
        assert (sched.sum_score, sched.sum_max) == (11, 20)
        assert _stat(db, "u2").overall_score == pytest.approx(30)


# ── Serialization with schedule corrections ────────────────────────────────────


class TestScheduleLocking:
    def test_schedule_is_shared_before_student_row_is_locked(self, db: Session, engine, schedule):
        with _capture_pg_selects(engine) as statements:
            _ingest(db, _attempt("e1", "a1"))

        locking = [sql for sql in statements if "FOR SHARE" in sql or "FOR UPDATE" in sql]
        assert "FROM schedules" in locking[0]
        assert "FOR SHARE" in locking[0]
        student = next(i for i, sql in enumerate(locking) if "FROM student_class_stats" in sql)
        assert student > 0
        assert "FOR UPDATE" in locking[student]

    def test_finalize_after_reweight_uses_committed_weight(self, db: Session, engine, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        assert db.get(ScheduleItem, "s1").contribution == 100

        other = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
        try:
            corrections.change_schedule_contribution(other, "s1", 50)
        finally:
            other.close()

        _ingest(db, _attempt("e2", "a2", 9, 10))

        stat = _stat(db)
        assert stat.overall_score == pytest.approx(45)
        _assert_consistent(db, stat)

    def test_finalize_after_removal_leaves_no_canonical(self, db: Session, engine, schedule):
        _ingest(db, _attempt("e1", "a1", 8, 10))
        assert db.get(ScheduleItem, "s1") is not None

        other = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
        try:
            corrections.remove_schedule(other, "s1")
        finally:
            other.close()

        assert _ingest(db, _attempt("e2", "a2", 9, 10)) is IngestOutcome.SKIPPED

        stat = _stat(db)
        assert stat.canonical_by_schedule == {}
        assert (stat.sum_score, stat.participation_count) == (0, 0)
        assert stat.overall_score == pytest.approx(0)
