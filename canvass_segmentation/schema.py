"""
schema.py

SQLAlchemy table definitions for the tables the engine reads and writes.

Geometry is stored as WKT text so the schema works on any SQLAlchemy
backend; a spatial database can add its own geometry columns or views on
top.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)


metadata = MetaData()


hierarchy_nodes = Table(
    "hierarchy_nodes",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("parent_id", String(64), ForeignKey("hierarchy_nodes.id"), nullable=True),
    Column("name", String(255)),
    Column("level", String(64)),
)


voters = Table(
    "voters",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("election_id", String(64), nullable=False, index=True),
    Column("node_id", String(64), ForeignKey("hierarchy_nodes.id"), nullable=True, index=True),
    Column("family_id", String(64), nullable=True),
    Column("address", Text, nullable=True),
    Column("floor_number", Integer, nullable=True),
    Column("latitude", Float, nullable=True),
    Column("longitude", Float, nullable=True),
)


segmentation_jobs = Table(
    "segmentation_jobs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("election_id", String(64), nullable=False),
    Column("node_id", String(64), nullable=True),
    Column("status", String(32), nullable=False, default="queued"),
    Column("version", Integer, nullable=True),
    Column("result", JSON, nullable=True),
    Column("error", Text, nullable=True),
    Column("created_at", DateTime, nullable=True),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
)


segments = Table(
    "segments",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("election_id", String(64), nullable=False),
    Column("node_id", String(64), nullable=True),
    Column("segment_name", String(255), nullable=False),
    Column("segment_type", String(32), nullable=False),
    Column("total_voters", Integer, nullable=False),
    Column("total_families", Integer, nullable=False),
    Column("status", String(32), nullable=False),
    Column("color", String(16)),
    Column("version", Integer, nullable=False),
    Column("metadata", JSON, nullable=False),
    Column("centroid_lat", Float),
    Column("centroid_lng", Float),
    Column("boundary", Text),
    Index("ix_segments_scope", "election_id", "node_id", "status"),
)


segment_members = Table(
    "segment_members",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("segment_id", String(64), ForeignKey("segments.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("atomic_unit_id", String(128), nullable=False),
    Column("voter_id", String(64), nullable=False),
)


segment_exceptions = Table(
    "segment_exceptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("election_id", String(64), nullable=False, index=True),
    Column("exception_type", String(64), nullable=False),
    Column("entity_type", String(32), nullable=False),
    Column("entity_id", String(128), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("metadata", JSON, nullable=False),
)


segmentation_locks = Table(
    "segmentation_locks",
    metadata,
    Column("scope_key", String(160), primary_key=True),
    Column("job_id", String(64), nullable=False),
    Column("acquired_at", DateTime, nullable=False),
)
