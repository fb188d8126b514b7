"""
engine.py

SegmentationEngine
------------------

Provides TWO entry points:

1. run(job)
   - Segments one election / node scope stored in the database (production
     mode), all-or-nothing within a single transaction

2. segment_dataframe(df)
   - Segments voters held in any DataFrame (CSV mode / local testing)

Both then:
    - Build atomic units (households)
    - Compute the parent boundary
    - Tile it into cells (grid or geohash)
    - Assign units to cells, splitting dense cells
    - Grow regions within the voter bounds
    - Build segments and exceptions
    - Validate the result
"""

import logging
import time
from typing import List, Optional

import pandas as pd
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .assigner import CellAssigner
from .atomic_units import AtomicUnitBuilder
from .boundary import ParentBoundaryComputer
from .cells import make_cell_generator
from .config import SegmentationConfig
from .errors import PersistenceError, PreconditionError
from .geometry import GeometryCapability, ShapelyGeometry
from .grower import RegionGrower
from .locking import ScopeLock
from .models import AtomicUnit, Job, RunResult, SegmentationOutcome
from .segments import SegmentBuilder
from .store import SegmentStore, make_engine
from .utils import compute_run_hash, log
from .validator import SegmentValidator


def _elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


class SegmentationEngine:
    """
    Orchestrates a complete segmentation run.

    Supports:
        • run(job)               → database → full pipeline → database
        • segment_dataframe(df)  → in memory, nothing persisted
    """

    def __init__(self, cfg: SegmentationConfig = None, engine: Optional[Engine] = None,
                 geometry: Optional[GeometryCapability] = None):
        self.cfg = cfg or SegmentationConfig()
        self._engine = engine
        self.geometry = geometry or ShapelyGeometry()

        # Core components
        self.unit_builder = AtomicUnitBuilder(self.cfg, self.geometry)
        self.boundary_computer = ParentBoundaryComputer(self.cfg, self.geometry)
        self.cell_generator = make_cell_generator(self.cfg, self.geometry)
        self.assigner = CellAssigner(self.cfg, self.cell_generator, self.geometry)
        self.segment_builder = SegmentBuilder(self.cfg, self.geometry)
        self.validator = SegmentValidator(self.cfg)

    @property
    def db(self) -> Engine:
        if self._engine is None:
            self._engine = make_engine(self.cfg.database_url)
        return self._engine

    # -------------------------------------------------------------------------
    # PUBLIC API: ENTRY POINTS
    # -------------------------------------------------------------------------

    def run(self, job: Job) -> RunResult:
        """
        Production run for one job.

        The scope claim is taken first; a held claim raises ScopeLockedError
        and leaves the job row alone. Everything else happens in one
        transaction. On failure the job is marked failed separately and the
        error re-raised.
        """
        log(f"==== SEGMENTATION RUN START (job {job.id}) ====")
        total_start = time.perf_counter()

        lock = ScopeLock(self.db, self.cfg, job.election_id, job.node_id, job.id)
        try:
            lock.acquire()
        except SQLAlchemyError as exc:
            log(f"Job {job.id} could not claim its scope: {exc}", logging.ERROR)
            raise PersistenceError(
                "Could not claim the segmentation scope",
                job_id=job.id, election_id=job.election_id, cause=type(exc).__name__,
            ) from exc

        try:
            with Session(self.db) as session, session.begin():
                result = self._run_in_transaction(session, job, total_start)
        except Exception as exc:
            log(f"Job {job.id} failed: {exc}", logging.ERROR)
            self._mark_failed(job, exc)
            if isinstance(exc, SQLAlchemyError):
                raise PersistenceError(
                    "Database operation failed", job_id=job.id, election_id=job.election_id, cause=type(exc).__name__
                ) from exc
            raise
        finally:
            lock.release()

        log(
            f"Job {job.id} completed: {result.segments_created} segments, "
            f"{result.exceptions_raised} exceptions, {result.voters_covered} voters "
            f"(algorithm {result.algorithm_ms} ms, write {result.db_write_ms} ms)"
        )
        log("==== SEGMENTATION RUN COMPLETE ====")
        return result

    def segment_dataframe(self, df_raw: pd.DataFrame, election_id: str = "local",
                          node_id: Optional[str] = None, version: int = 1,
                          job_id: Optional[str] = None) -> SegmentationOutcome:
        """
        Segment voters from a DataFrame (CSV mode).
        """
        log("==== SEGMENTATION (DATAFRAME MODE) START ====")
        units = self.unit_builder.build_units(df_raw)
        outcome = self.segment_units(units, election_id, node_id, version, job_id)
        log("==== SEGMENTATION (DATAFRAME MODE) COMPLETE ====")
        return outcome

    def segment_units(self, units: List[AtomicUnit], election_id: str, node_id: Optional[str] = None,
                      version: int = 1, job_id: Optional[str] = None) -> SegmentationOutcome:
        """
        The pipeline proper, shared by both modes.
        """
        if not units:
            raise PreconditionError("No located voters in scope", election_id=election_id, node_id=node_id)

        # ---------------------------------------------------------
        # 1. Boundary and cells
        # ---------------------------------------------------------
        boundary = self.boundary_computer.compute(units)
        cells = self.cell_generator.generate(boundary, len(units))

        # ---------------------------------------------------------
        # 2. Assignment and growth
        # ---------------------------------------------------------
        grower = RegionGrower(self.cfg)
        placeable, oversized = grower.split_oversized(units)
        assignment = self.assigner.assign(placeable, cells, boundary)
        growth = grower.grow(assignment)

        # ---------------------------------------------------------
        # 3. Output records
        # ---------------------------------------------------------
        segments, exceptions = self.segment_builder.build(
            growth.regions,
            oversized + growth.unplaced,
            assignment.cells,
            election_id=election_id,
            node_id=node_id,
            version=version,
            job_id=job_id,
        )

        # ---------------------------------------------------------
        # 4. Validation
        # ---------------------------------------------------------
        self.validator.validate(units, segments, exceptions, scope={"election_id": election_id, "node_id": node_id})

        run_hash = compute_run_hash([s.unit_ids for s in segments], [e.entity_id for e in exceptions])
        log(f"Run hash: {run_hash}")

        return SegmentationOutcome(
            units=units,
            boundary=boundary,
            cells=assignment.cells,
            segments=segments,
            exceptions=exceptions,
            run_hash=run_hash,
        )

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    def _run_in_transaction(self, session: Session, job: Job, total_start: float) -> RunResult:
        store = SegmentStore(session)
        store.start_job(job)

        node_ids = store.resolve_scope(job.node_id)
        df = self.unit_builder.load_from_db(session, job.election_id, node_ids)
        units = self.unit_builder.build_units(df)
        if not units:
            raise PreconditionError("No located voters in scope", election_id=job.election_id, node_id=job.node_id)

        version = store.next_version(job.election_id, job.node_id)
        log(f"Segmenting {len(units)} units as version {version}")

        algo_start = time.perf_counter()
        outcome = self.segment_units(units, job.election_id, job.node_id, version, job.id)
        algorithm_ms = _elapsed_ms(algo_start)

        write_start = time.perf_counter()
        store.replace_draft_segments(job.election_id, job.node_id)
        store.close_open_exceptions(job.election_id, job.node_id)
        store.insert_segments(outcome.segments)
        members = store.insert_members(outcome.segments, {u.id: u.voter_ids for u in units})
        store.insert_exceptions(outcome.exceptions)
        db_write_ms = _elapsed_ms(write_start)
        log(f"Wrote {len(outcome.segments)} segments, {members} members, {len(outcome.exceptions)} exceptions")

        result = RunResult(
            status="completed",
            segments_created=len(outcome.segments),
            exceptions_raised=len(outcome.exceptions),
            voters_covered=outcome.voters_covered,
            version=version,
            run_hash=outcome.run_hash,
            algorithm_ms=algorithm_ms,
            db_write_ms=db_write_ms,
            total_ms=_elapsed_ms(total_start),
        )
        store.complete_job(job, version, result.to_dict())
        return result

    def _mark_failed(self, job: Job, exc: Exception):
        try:
            with Session(self.db) as session, session.begin():
                SegmentStore(session).fail_job(job, str(exc))
        except SQLAlchemyError as mark_exc:
            log(f"Could not mark job {job.id} as failed: {mark_exc}", logging.ERROR)
