"""
End-to-end tests for SegmentationEngine.run() against in-memory SQLite.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from canvass_segmentation.engine import SegmentationEngine
from canvass_segmentation.errors import PersistenceError, PreconditionError, ScopeLockedError
from canvass_segmentation.locking import ScopeLock, advisory_key, scope_key
from canvass_segmentation.models import Job
from canvass_segmentation.schema import (
    segment_exceptions,
    segment_members,
    segmentation_jobs,
    segmentation_locks,
    segments,
    voters,
)
from canvass_segmentation.store import SegmentStore, utcnow

from conftest import family_frame


def _job(job_id="J1", node_id="AC1"):
    return Job(id=job_id, election_id="E1", node_id=node_id)


def _job_row(engine, job_id):
    with engine.connect() as conn:
        return conn.execute(
            select(segmentation_jobs).where(segmentation_jobs.c.id == job_id)
        ).mappings().first()


def _segment_rows(engine):
    with engine.connect() as conn:
        return conn.execute(select(segments)).mappings().all()


class TestScopeResolution:

    def test_node_includes_descendants(self, seeded_db):
        with Session(seeded_db) as session:
            assert SegmentStore(session).resolve_scope("AC1") == ["AC1", "B1", "B2", "EMPTY"]

    def test_leaf_node_is_its_own_scope(self, seeded_db):
        with Session(seeded_db) as session:
            assert SegmentStore(session).resolve_scope("B1") == ["B1"]

    def test_unknown_node_is_a_precondition_failure(self, seeded_db):
        with Session(seeded_db) as session:
            with pytest.raises(PreconditionError):
                SegmentStore(session).resolve_scope("NOPE")

    def test_no_node_means_whole_election(self, seeded_db):
        with Session(seeded_db) as session:
            assert SegmentStore(session).resolve_scope(None) is None


class TestRun:

    @pytest.fixture
    def engine(self, cfg, seeded_db):
        return SegmentationEngine(cfg, engine=seeded_db)

    def test_run_persists_segments_members_and_job(self, engine, seeded_db):
        result = engine.run(_job())

        assert result.status == "completed"
        assert result.voters_covered == 200
        assert result.version == 1

        seg_rows = _segment_rows(seeded_db)
        with seeded_db.connect() as conn:
            member_voters = list(conn.execute(select(segment_members.c.voter_id)).scalars())
            exc_rows = conn.execute(select(segment_exceptions)).mappings().all()

        assert len(seg_rows) == result.segments_created
        assert len(exc_rows) == result.exceptions_raised
        segmented = sum(r["total_voters"] for r in seg_rows)
        excepted = sum(r["metadata"]["voter_count"] for r in exc_rows)
        assert segmented + excepted == 200

        assert len(member_voters) == segmented
        assert len(set(member_voters)) == len(member_voters)
        assert not any(v.startswith("X1") for v in member_voters)

        assert all(r["status"] == "draft" and r["version"] == 1 for r in seg_rows)
        assert all(r["boundary"].startswith(("POLYGON", "MULTIPOLYGON")) for r in seg_rows)

        job = _job_row(seeded_db, "J1")
        assert job["status"] == "completed"
        assert job["version"] == 1
        assert job["result"]["run_hash"] == result.run_hash
        assert job["result"]["segments_created"] == result.segments_created

    def test_rerun_replaces_drafts_and_is_deterministic(self, engine, seeded_db):
        first = engine.run(_job("J1"))
        second = engine.run(_job("J2"))

        assert second.version == 2
        assert second.run_hash == first.run_hash

        seg_rows = _segment_rows(seeded_db)
        assert len(seg_rows) == second.segments_created
        assert {r["version"] for r in seg_rows} == {2}

        with seeded_db.connect() as conn:
            members = conn.execute(select(func.count()).select_from(segment_members)).scalar()
        assert members == sum(r["total_voters"] for r in seg_rows)

    def test_failure_rolls_back_and_marks_job_failed(self, engine, seeded_db, monkeypatch):
        first = engine.run(_job("J1"))

        def boom(self, items):
            raise RuntimeError("disk full")

        monkeypatch.setattr(SegmentStore, "insert_exceptions", boom)

        with pytest.raises(RuntimeError, match="disk full"):
            engine.run(_job("J2"))

        seg_rows = _segment_rows(seeded_db)
        assert len(seg_rows) == first.segments_created
        assert {r["version"] for r in seg_rows} == {1}

        job = _job_row(seeded_db, "J2")
        assert job["status"] == "failed"
        assert "disk full" in job["error"]

        with seeded_db.connect() as conn:
            assert conn.execute(select(segmentation_locks)).first() is None

    def test_database_errors_are_wrapped(self, engine, seeded_db, monkeypatch):
        def locked(self, items):
            raise OperationalError("INSERT INTO segments", {}, Exception("database is locked"))

        monkeypatch.setattr(SegmentStore, "insert_segments", locked)

        with pytest.raises(PersistenceError):
            engine.run(_job("J1"))

        assert _segment_rows(seeded_db) == []
        assert _job_row(seeded_db, "J1")["status"] == "failed"

    def test_claim_database_error_is_wrapped(self, engine, seeded_db, monkeypatch):
        def unreachable(self):
            raise OperationalError("SELECT segmentation_locks", {}, Exception("connection refused"))

        monkeypatch.setattr(ScopeLock, "_acquire_row", unreachable)

        with pytest.raises(PersistenceError):
            engine.run(_job("J1"))

        assert _job_row(seeded_db, "J1") is None

    def test_empty_scope_is_a_precondition_failure(self, engine, seeded_db):
        with pytest.raises(PreconditionError):
            engine.run(_job("J1", node_id="EMPTY"))

        assert _job_row(seeded_db, "J1")["status"] == "failed"
        assert _segment_rows(seeded_db) == []

    def test_unknown_node_fails_job(self, engine, seeded_db):
        with pytest.raises(PreconditionError):
            engine.run(_job("J1", node_id="NOPE"))

        assert _job_row(seeded_db, "J1")["status"] == "failed"


class TestScopeLock:

    def test_held_scope_is_rejected_without_touching_job(self, cfg, seeded_db):
        engine = SegmentationEngine(cfg, engine=seeded_db)
        holder = ScopeLock(seeded_db, cfg, "E1", "AC1", "other-job")
        holder.acquire()
        try:
            with pytest.raises(ScopeLockedError):
                engine.run(_job("J1"))
            assert _job_row(seeded_db, "J1") is None
        finally:
            holder.release()

        assert engine.run(_job("J1")).status == "completed"

    def test_other_scope_is_not_blocked(self, cfg, seeded_db):
        engine = SegmentationEngine(cfg, engine=seeded_db)
        with ScopeLock(seeded_db, cfg, "E1", "OTHER", "other-job"):
            assert engine.run(_job("J1", node_id="B1")).status == "completed"

    def test_stale_claim_is_taken_over(self, cfg, seeded_db):
        with seeded_db.begin() as conn:
            conn.execute(segmentation_locks.insert().values(
                scope_key=scope_key("E1", "AC1"),
                job_id="crashed-job",
                acquired_at=utcnow() - timedelta(seconds=cfg.lock_ttl_seconds + 60),
            ))

        result = SegmentationEngine(cfg, engine=seeded_db).run(_job("J1"))
        assert result.status == "completed"

    def test_advisory_key_is_stable_and_fits_bigint(self):
        key = advisory_key(scope_key("E1", "AC1"))
        assert key == advisory_key("E1:AC1")
        assert 0 <= key < 2 ** 63
        assert advisory_key(scope_key("E1", None)) != key


class TestStoreReads:

    def test_loaders_return_persisted_run(self, cfg, seeded_db):
        result = SegmentationEngine(cfg, engine=seeded_db).run(_job())

        with Session(seeded_db) as session:
            store = SegmentStore(session)
            seg_df = store.load_segments("E1", "AC1", version=1)
            members = store.load_members(seg_df["id"].tolist())
            exc_df = store.load_exceptions("E1", job_id="J1")

        assert len(seg_df) == result.segments_created
        assert len(members) == seg_df["total_voters"].sum()
        assert len(exc_df) == result.exceptions_raised


class TestRerunsWithoutSegments:
    """Three small households that can never reach the minimum together."""

    @pytest.fixture
    def small_db(self, db_engine):
        with db_engine.begin() as conn:
            conn.execute(voters.insert(), family_frame([
                ("F1", 3, 12.9700, 77.5900),
                ("F2", 4, 12.9700, 77.5920),
                ("F3", 2, 12.9720, 77.5900),
            ]).to_dict("records"))
        return db_engine

    @pytest.fixture
    def engine(self, cfg, small_db):
        return SegmentationEngine(cfg, engine=small_db)

    def _exceptions(self, small_db):
        with small_db.connect() as conn:
            return conn.execute(select(segment_exceptions)).mappings().all()

    def test_each_run_gets_a_fresh_version(self, engine, small_db):
        first = engine.run(Job(id="J1", election_id="E1"))
        second = engine.run(Job(id="J2", election_id="E1"))

        assert first.segments_created == 0
        assert first.exceptions_raised == 3
        assert (first.version, second.version) == (1, 2)
        assert _job_row(small_db, "J2")["version"] == 2

    def test_rerun_supersedes_earlier_open_exceptions(self, engine, small_db):
        engine.run(Job(id="J1", election_id="E1"))
        engine.run(Job(id="J2", election_id="E1"))

        rows = self._exceptions(small_db)
        open_rows = [r for r in rows if r["status"] == "open"]

        assert len(rows) == 6
        assert {r["metadata"]["job_id"] for r in open_rows} == {"J2"}
        assert {r["metadata"]["version"] for r in open_rows} == {2}
        assert {r["status"] for r in rows if r["metadata"]["job_id"] == "J1"} == {"superseded"}
        assert sum(r["metadata"]["voter_count"] for r in open_rows) == 9

    def test_other_scope_exceptions_stay_open(self, engine, small_db):
        engine.run(Job(id="J1", election_id="E1"))
        with small_db.begin() as conn:
            conn.execute(segment_exceptions.insert().values(
                election_id="E1",
                exception_type="oversized_atomic_unit",
                entity_type="atomic_unit",
                entity_id="family:ELSEWHERE",
                severity="high",
                status="open",
                metadata={"job_id": "J0", "node_id": "B9", "voter_count": 40},
            ))

        engine.run(Job(id="J2", election_id="E1"))

        elsewhere = [r for r in self._exceptions(small_db) if r["entity_id"] == "family:ELSEWHERE"]
        assert [r["status"] for r in elsewhere] == ["open"]
