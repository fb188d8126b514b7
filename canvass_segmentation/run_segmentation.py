#!/usr/bin/env python
"""
run_segmentation.py

Runnable entry point for segmentation.

Usage:
    canvass-segment --csv voters.csv [--output outputs/] [--plot]
    canvass-segment --election E1 [--node N1] [--job-id J1] [--database-url URL]
    canvass-segment --init-db [--database-url URL]
"""

import os
import sys
import json
import uuid
import argparse

import pandas as pd
from shapely.geometry import mapping
from sqlalchemy.orm import Session

from . import segment_viewer
from .config import SegmentationConfig
from .engine import SegmentationEngine
from .errors import SegmentationError
from .models import Job, SegmentationOutcome
from .store import create_schema, make_engine
from .utils import configure_logging, ensure_dir, log, write_json


TEXT_COLUMNS = {"id": str, "election_id": str, "node_id": str, "family_id": str, "address": str}


def build_config(args) -> SegmentationConfig:
    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.strategy:
        overrides["strategy"] = args.strategy
    if args.min_voters is not None:
        overrides["min_segment_voters"] = args.min_voters
    if args.max_voters is not None:
        overrides["max_segment_voters"] = args.max_voters
    if args.output:
        overrides["output_dir"] = args.output
    return SegmentationConfig(**overrides)


def write_outputs(outcome: SegmentationOutcome, output_dir: str):
    """Write segments, members, exceptions and GeoJSON for a CSV-mode run."""
    ensure_dir(output_dir)

    pd.DataFrame([
        {
            "segment_code": s.code,
            "segment_name": s.name,
            "total_voters": s.total_voters,
            "total_families": s.total_families,
            "color": s.color,
            "version": s.version,
            "centroid_lat": s.centroid_lat,
            "centroid_lng": s.centroid_lon,
            "metadata": json.dumps(s.metadata, sort_keys=True),
            "boundary": s.geometry.wkt,
        }
        for s in outcome.segments
    ]).to_csv(os.path.join(output_dir, "segments.csv"), index=False)

    unit_voters = {u.id: u.voter_ids for u in outcome.units}
    pd.DataFrame(
        [
            {"segment_code": s.code, "atomic_unit_id": uid, "voter_id": vid}
            for s in outcome.segments
            for uid in s.unit_ids
            for vid in unit_voters[uid]
        ],
        columns=["segment_code", "atomic_unit_id", "voter_id"],
    ).to_csv(os.path.join(output_dir, "segment_members.csv"), index=False)

    pd.DataFrame(
        [
            {
                "exception_type": e.exception_type,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "severity": e.severity,
                "status": e.status,
                "voter_count": e.voter_count,
                "reason": e.metadata.get("reason"),
            }
            for e in outcome.exceptions
        ],
        columns=["exception_type", "entity_type", "entity_id", "severity", "status", "voter_count", "reason"],
    ).to_csv(os.path.join(output_dir, "exceptions.csv"), index=False)

    write_json(os.path.join(output_dir, "segments.geojson"), {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": mapping(s.geometry),
                "properties": {
                    "segment_code": s.code,
                    "total_voters": s.total_voters,
                    "total_families": s.total_families,
                    "color": s.color,
                },
            }
            for s in outcome.segments
        ],
    })

    write_json(os.path.join(output_dir, "summary.json"), {
        "segments_created": len(outcome.segments),
        "exceptions_raised": len(outcome.exceptions),
        "voters_covered": outcome.voters_covered,
        "run_hash": outcome.run_hash,
    })
    log(f"Saved outputs to {output_dir}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Partition voters into canvassing segments"
    )
    parser.add_argument("--csv", type=str, help="Voter CSV to segment in memory")
    parser.add_argument("--output", type=str, default=None, help="Output directory for CSV mode (default: config)")
    parser.add_argument("--election", type=str, help="Election id to segment from the database")
    parser.add_argument("--node", type=str, default=None, help="Hierarchy node restricting the scope")
    parser.add_argument("--job-id", type=str, default=None, help="Job id (default: a new uuid)")
    parser.add_argument("--database-url", type=str, default=None, help="SQLAlchemy database URL")
    parser.add_argument("--init-db", action="store_true", help="Create the tables and exit")
    parser.add_argument("--strategy", choices=["grid", "geohash"], default=None, help="Cell strategy")
    parser.add_argument("--min-voters", type=int, default=None, help="Minimum voters per segment")
    parser.add_argument("--max-voters", type=int, default=None, help="Maximum voters per segment")
    parser.add_argument("--plot", action="store_true", help="Also write an HTML view of the segments")

    args = parser.parse_args(argv)

    try:
        cfg = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))
    configure_logging(cfg.log_level)

    if args.init_db:
        create_schema(make_engine(cfg.database_url))
        return 0

    if bool(args.csv) == bool(args.election):
        parser.error("Choose either --csv OR --election.")

    try:
        if args.csv:
            if not os.path.exists(args.csv):
                print(f"Error: CSV file not found: {args.csv}")
                return 1

            df = pd.read_csv(args.csv, dtype=TEXT_COLUMNS)
            log(f"Loaded {len(df)} rows from {args.csv}")

            outcome = SegmentationEngine(cfg).segment_dataframe(df)
            write_outputs(outcome, cfg.output_dir)
            if args.plot:
                segment_viewer.write_html(
                    segment_viewer.figure_from_outcome(outcome),
                    os.path.join(cfg.output_dir, "segments.html"),
                )

            print(f"\nSegmentation complete: {len(outcome.segments)} segments, "
                  f"{len(outcome.exceptions)} exceptions, {outcome.voters_covered} voters")
            print(f"Results saved to: {cfg.output_dir}")
            return 0

        engine = make_engine(cfg.database_url)
        job = Job(id=args.job_id or str(uuid.uuid4()), election_id=args.election, node_id=args.node)
        result = SegmentationEngine(cfg, engine=engine).run(job)
        print(json.dumps(result.to_dict(), indent=2))

        if args.plot:
            with Session(engine) as session:
                segment_viewer.write_html(
                    segment_viewer.figure_from_db(session, job.id),
                    os.path.join(cfg.output_dir, f"segments_{job.id}.html"),
                )
        return 0

    except SegmentationError as exc:
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
