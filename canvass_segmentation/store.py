"""
store.py

SegmentStore
------------

Every read and write the engine performs against the database, expressed
with SQLAlchemy Core on a caller-owned Session. The store never commits:
transaction boundaries belong to the engine.

    - scope resolution (node plus all descendant hierarchy nodes)
    - version numbering per election / node scope
    - draft replacement, segment / member / exception inserts
    - job bookkeeping
    - read-back for the viewer
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy import create_engine, delete, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from .errors import PreconditionError
from .models import Job, Segment, SegmentException
from .schema import (
    hierarchy_nodes,
    metadata,
    segment_exceptions,
    segment_members,
    segmentation_jobs,
    segments,
)
from .utils import log


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# -------------------------------------------------------------
# Engine helpers
# -------------------------------------------------------------

def make_engine(url: str, **kwargs) -> Engine:
    """
    Create an engine for the given URL.

    In-memory SQLite gets a single shared connection so that every session
    sees the same database.
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs.setdefault("poolclass", StaticPool)
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


def create_schema(engine: Engine):
    metadata.create_all(engine)
    log(f"Schema ready on {engine.url.render_as_string(hide_password=True)}")


def _scope(table, election_id: str, node_id: Optional[str]):
    clauses = [table.c.election_id == election_id]
    if node_id is None:
        clauses.append(table.c.node_id.is_(None))
    else:
        clauses.append(table.c.node_id == node_id)
    return clauses


class SegmentStore:

    def __init__(self, session: Session):
        self.session = session

    # -------------------------------------------------------------
    # Scope
    # -------------------------------------------------------------

    def resolve_scope(self, node_id: Optional[str]) -> Optional[List[str]]:
        """
        Node ids a run covers: the node itself and all its descendants.

        None means the whole election. Unknown nodes raise PreconditionError.
        """
        if node_id is None:
            return None

        exists = self.session.execute(
            select(hierarchy_nodes.c.id).where(hierarchy_nodes.c.id == node_id)
        ).first()
        if exists is None:
            raise PreconditionError("Hierarchy node not found", node_id=node_id)

        tree = (
            select(hierarchy_nodes.c.id)
            .where(hierarchy_nodes.c.id == node_id)
            .cte("node_tree", recursive=True)
        )
        tree = tree.union_all(
            select(hierarchy_nodes.c.id).where(hierarchy_nodes.c.parent_id == tree.c.id)
        )
        node_ids = sorted(self.session.execute(select(tree.c.id)).scalars())
        log(f"Scope {node_id} covers {len(node_ids)} hierarchy nodes")
        return node_ids

    def next_version(self, election_id: str, node_id: Optional[str]) -> int:
        """One past the highest version any segment or finished job of the scope carries."""
        from_segments = self.session.execute(
            select(func.max(segments.c.version)).where(*_scope(segments, election_id, node_id))
        ).scalar()
        from_jobs = self.session.execute(
            select(func.max(segmentation_jobs.c.version)).where(*_scope(segmentation_jobs, election_id, node_id))
        ).scalar()
        return max(from_segments or 0, from_jobs or 0) + 1

    # -------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        row = self.session.execute(
            select(segmentation_jobs).where(segmentation_jobs.c.id == job_id)
        ).mappings().first()
        return dict(row) if row is not None else None

    def create_job(self, job: Job):
        self.session.execute(insert(segmentation_jobs).values(
            id=job.id,
            election_id=job.election_id,
            node_id=job.node_id,
            status=job.status,
            created_at=utcnow(),
        ))

    def start_job(self, job: Job):
        """Mark a job running, registering it first if it has no row yet."""
        if self.get_job(job.id) is None:
            self.create_job(job)
        self.session.execute(
            update(segmentation_jobs)
            .where(segmentation_jobs.c.id == job.id)
            .values(status="running", started_at=utcnow(), error=None)
        )
        job.status = "running"

    def complete_job(self, job: Job, version: int, result: Dict[str, Any]):
        self.session.execute(
            update(segmentation_jobs)
            .where(segmentation_jobs.c.id == job.id)
            .values(status="completed", version=version, result=result, completed_at=utcnow())
        )
        job.status = "completed"

    def fail_job(self, job: Job, error: str):
        if self.get_job(job.id) is None:
            self.create_job(job)
        self.session.execute(
            update(segmentation_jobs)
            .where(segmentation_jobs.c.id == job.id)
            .values(status="failed", error=error, completed_at=utcnow())
        )
        job.status = "failed"

    # -------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------

    def replace_draft_segments(self, election_id: str, node_id: Optional[str]) -> int:
        """Delete the scope's draft segments and their members."""
        draft_ids = list(self.session.execute(
            select(segments.c.id).where(*_scope(segments, election_id, node_id), segments.c.status == "draft")
        ).scalars())
        if not draft_ids:
            return 0

        self.session.execute(delete(segment_members).where(segment_members.c.segment_id.in_(draft_ids)))
        self.session.execute(delete(segments).where(segments.c.id.in_(draft_ids)))
        log(f"Removed {len(draft_ids)} previous draft segments")
        return len(draft_ids)

    def close_open_exceptions(self, election_id: str, node_id: Optional[str]) -> int:
        """Mark the scope's open exceptions from earlier runs as superseded."""
        rows = self.session.execute(
            select(segment_exceptions.c.id, segment_exceptions.c.metadata).where(
                segment_exceptions.c.election_id == election_id,
                segment_exceptions.c.status == "open",
            )
        ).mappings().all()
        stale_ids = [r["id"] for r in rows if (r["metadata"] or {}).get("node_id") == node_id]
        if not stale_ids:
            return 0

        self.session.execute(
            update(segment_exceptions)
            .where(segment_exceptions.c.id.in_(stale_ids))
            .values(status="superseded")
        )
        log(f"Superseded {len(stale_ids)} open exceptions from earlier runs")
        return len(stale_ids)

    def insert_segments(self, items: Sequence[Segment]):
        rows = []
        for s in items:
            if s.id is None:
                s.id = str(uuid.uuid4())
            rows.append({
                "id": s.id,
                "election_id": s.election_id,
                "node_id": s.node_id,
                "segment_name": s.name,
                "segment_type": s.segment_type,
                "total_voters": s.total_voters,
                "total_families": s.total_families,
                "status": s.status,
                "color": s.color,
                "version": s.version,
                "metadata": s.metadata,
                "centroid_lat": s.centroid_lat,
                "centroid_lng": s.centroid_lon,
                "boundary": s.geometry.wkt,
            })
        if rows:
            self.session.execute(insert(segments), rows)

    def insert_members(self, items: Sequence[Segment], unit_voters: Dict[str, Sequence[str]]) -> int:
        """One row per voter, tagged with its atomic unit."""
        rows = [
            {"segment_id": s.id, "atomic_unit_id": unit_id, "voter_id": voter_id}
            for s in items
            for unit_id in s.unit_ids
            for voter_id in unit_voters[unit_id]
        ]
        if rows:
            self.session.execute(insert(segment_members), rows)
        return len(rows)

    def insert_exceptions(self, items: Sequence[SegmentException]):
        rows = [
            {
                "election_id": e.election_id,
                "exception_type": e.exception_type,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "severity": e.severity,
                "status": e.status,
                "metadata": e.metadata,
            }
            for e in items
        ]
        if rows:
            self.session.execute(insert(segment_exceptions), rows)

    # -------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------

    def load_segments(self, election_id: str, node_id: Optional[str] = None,
                      version: Optional[int] = None) -> pd.DataFrame:
        stmt = select(segments).where(*_scope(segments, election_id, node_id))
        if version is not None:
            stmt = stmt.where(segments.c.version == version)
        return pd.read_sql(stmt.order_by(segments.c.segment_name), self.session.connection())

    def load_members(self, segment_ids: Sequence[str]) -> pd.DataFrame:
        stmt = (
            select(segment_members)
            .where(segment_members.c.segment_id.in_(list(segment_ids)))
            .order_by(segment_members.c.id)
        )
        return pd.read_sql(stmt, self.session.connection())

    def load_exceptions(self, election_id: str, job_id: Optional[str] = None) -> pd.DataFrame:
        """Exceptions of an election, optionally only those raised by one job."""
        stmt = (
            select(segment_exceptions)
            .where(segment_exceptions.c.election_id == election_id)
            .order_by(segment_exceptions.c.id)
        )
        rows = [dict(r) for r in self.session.execute(stmt).mappings()]
        if job_id is not None:
            rows = [r for r in rows if (r["metadata"] or {}).get("job_id") == job_id]
        return pd.DataFrame(rows, columns=[c.name for c in segment_exceptions.columns])
