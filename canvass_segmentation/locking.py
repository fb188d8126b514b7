"""
locking.py

ScopeLock
---------

At most one segmentation run per (election, node) scope at a time.

    PostgreSQL   session-level pg_try_advisory_lock on a dedicated
                 connection; released on exit or when the connection drops
    other        a claim row in segmentation_locks; claims older than
                 lock_ttl_seconds are stale and may be taken over

Claiming never waits: a held scope raises ScopeLockedError at once.
"""

import hashlib
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, insert, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from .config import SegmentationConfig
from .errors import ScopeLockedError
from .schema import segmentation_locks
from .store import utcnow
from .utils import log


def scope_key(election_id: str, node_id: Optional[str]) -> str:
    return f"{election_id}:{node_id if node_id is not None else '*'}"


def advisory_key(key: str) -> int:
    """63-bit positive integer for pg advisory locks."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") >> 1


class ScopeLock:

    def __init__(self, engine: Engine, cfg: SegmentationConfig, election_id: str,
                 node_id: Optional[str], job_id: str):
        self.engine = engine
        self.cfg = cfg
        self.key = scope_key(election_id, node_id)
        self.job_id = job_id
        self._conn: Optional[Connection] = None
        self.held = False

    @property
    def uses_advisory_lock(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    # -------------------------------------------------------------
    # Context manager
    # -------------------------------------------------------------

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    # -------------------------------------------------------------
    # Acquire / release
    # -------------------------------------------------------------

    def acquire(self):
        if self.uses_advisory_lock:
            self._acquire_advisory()
        else:
            self._acquire_row()
        self.held = True
        log(f"Claimed scope {self.key} for job {self.job_id}")

    def release(self):
        if not self.held:
            return
        try:
            if self.uses_advisory_lock:
                self._conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": advisory_key(self.key)})
                self._conn.commit()
            else:
                with self.engine.begin() as conn:
                    conn.execute(
                        delete(segmentation_locks).where(
                            segmentation_locks.c.scope_key == self.key,
                            segmentation_locks.c.job_id == self.job_id,
                        )
                    )
        finally:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self.held = False
        log(f"Released scope {self.key}")

    def _acquire_advisory(self):
        conn = self.engine.connect()
        try:
            got = conn.execute(text("SELECT pg_try_advisory_lock(:k)"), {"k": advisory_key(self.key)}).scalar()
            conn.commit()
        except Exception:
            conn.close()
            raise
        if not got:
            conn.close()
            raise ScopeLockedError("Scope is being segmented by another run", scope=self.key, job_id=self.job_id)
        self._conn = conn

    def _acquire_row(self):
        now = utcnow()
        ttl = timedelta(seconds=self.cfg.lock_ttl_seconds)
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(segmentation_locks).where(segmentation_locks.c.scope_key == self.key)
                ).mappings().first()
                if row is not None:
                    if now - row["acquired_at"] < ttl:
                        raise ScopeLockedError(
                            "Scope is being segmented by another run",
                            scope=self.key,
                            job_id=self.job_id,
                            holder=row["job_id"],
                        )
                    log(f"Taking over stale claim on {self.key} from job {row['job_id']}")
                    conn.execute(delete(segmentation_locks).where(segmentation_locks.c.scope_key == self.key))
                conn.execute(insert(segmentation_locks).values(scope_key=self.key, job_id=self.job_id, acquired_at=now))
        except IntegrityError as exc:
            raise ScopeLockedError(
                "Scope is being segmented by another run", scope=self.key, job_id=self.job_id
            ) from exc
