"""
segment_viewer.py

Visualization tool for segmentation runs.

Features:
---------
✓ Segment polygons filled with their palette colour
✓ Atomic unit centroids
✓ Exception locations, by exception type
✓ Exportable interactive HTML (Plotly)

Usage:
------
python -m canvass_segmentation.segment_viewer --csv voters.csv --output segments.html
python -m canvass_segmentation.segment_viewer --job-id <id> --database-url postgresql://...
"""

import os
import argparse
from typing import Iterable, List, Optional, Tuple

import pandas as pd
import plotly.graph_objects as go
from shapely import wkt
from sqlalchemy.orm import Session

from .config import SegmentationConfig
from .models import SegmentationOutcome
from .store import SegmentStore, make_engine
from .utils import configure_logging, ensure_dir, log


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def polygon_rings(geometry) -> List[Tuple[List[float], List[float]]]:
    """Exterior rings of a Polygon / MultiPolygon as (lons, lats) pairs."""
    if geometry is None or geometry.is_empty:
        return []
    parts = geometry.geoms if hasattr(geometry, "geoms") else [geometry]
    rings = []
    for part in parts:
        if part.geom_type != "Polygon":
            continue
        xs, ys = part.exterior.coords.xy
        rings.append((list(xs), list(ys)))
    return rings


def segment_traces(segments: Iterable[dict]) -> List[go.Scatter]:
    """One filled trace per segment; multipart segments share a legend group."""
    traces = []
    for seg in segments:
        hover = f"{seg['code']}<br>{seg['total_voters']} voters<br>{seg['total_families']} units"
        for k, (xs, ys) in enumerate(polygon_rings(seg["geometry"])):
            traces.append(go.Scatter(
                x=xs,
                y=ys,
                mode="lines",
                fill="toself",
                fillcolor=seg["color"],
                opacity=0.45,
                line=dict(color=seg["color"], width=1),
                name=seg["code"],
                legendgroup=seg["code"],
                showlegend=(k == 0),
                hoverinfo="text",
                text=hover,
            ))
    return traces


def point_trace(df: pd.DataFrame, name: str, color: str, size: int = 5, symbol: str = "circle") -> go.Scatter:
    return go.Scatter(
        x=df["lon"],
        y=df["lat"],
        mode="markers",
        marker=dict(color=color, size=size, symbol=symbol),
        name=name,
        hoverinfo="text",
        text=df["label"],
    )


def build_figure(segments: List[dict], units: Optional[pd.DataFrame] = None,
                 exceptions: Optional[pd.DataFrame] = None, title: str = "Segments") -> go.Figure:
    fig = go.Figure()
    for trace in segment_traces(segments):
        fig.add_trace(trace)

    if units is not None and not units.empty:
        fig.add_trace(point_trace(units, "Atomic units", "#333333", size=4))

    if exceptions is not None and not exceptions.empty:
        for exc_type, group in exceptions.groupby("exception_type", sort=True):
            fig.add_trace(point_trace(group, exc_type, "#d62728", size=10, symbol="x"))

    fig.update_layout(
        title=title,
        xaxis_title="Longitude",
        yaxis_title="Latitude",
        yaxis=dict(scaleanchor="x", scaleratio=1),
        width=1100,
        height=800,
    )
    return fig


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------

def figure_from_outcome(outcome: SegmentationOutcome, title: str = "Segments") -> go.Figure:
    """Figure for an in-memory run."""
    segments = [
        {
            "code": s.code,
            "color": s.color,
            "total_voters": s.total_voters,
            "total_families": s.total_families,
            "geometry": s.geometry,
        }
        for s in outcome.segments
    ]
    units = pd.DataFrame(
        [{"lat": u.lat, "lon": u.lon, "label": f"{u.id} ({u.voter_count})"} for u in outcome.units],
        columns=["lat", "lon", "label"],
    )
    exceptions = pd.DataFrame(
        [
            {"lat": e.lat, "lon": e.lon, "exception_type": e.exception_type,
             "label": f"{e.entity_id}: {e.metadata.get('reason', '')}"}
            for e in outcome.exceptions
        ],
        columns=["lat", "lon", "exception_type", "label"],
    )
    return build_figure(segments, units, exceptions, title)


def figure_from_db(session: Session, job_id: str) -> go.Figure:
    """Figure for a completed job, read back from the database."""
    store = SegmentStore(session)
    job = store.get_job(job_id)
    if job is None:
        raise ValueError(f"Unknown job id: {job_id}")

    seg_df = store.load_segments(job["election_id"], job["node_id"], job["version"])
    segments = [
        {
            "code": (row["metadata"] or {}).get("segment_code", row["segment_name"]),
            "color": row["color"],
            "total_voters": row["total_voters"],
            "total_families": row["total_families"],
            "geometry": wkt.loads(row["boundary"]) if row["boundary"] else None,
        }
        for _, row in seg_df.iterrows()
    ]

    exc_df = store.load_exceptions(job["election_id"], job_id)
    rows = []
    for _, row in exc_df.iterrows():
        location = (row["metadata"] or {}).get("location")
        if not location:
            continue
        rows.append({
            "lat": location["lat"],
            "lon": location["lon"],
            "exception_type": row["exception_type"],
            "label": f"{row['entity_id']}: {row['metadata'].get('reason', '')}",
        })
    exceptions = pd.DataFrame(rows, columns=["lat", "lon", "exception_type", "label"])

    log(f"Loaded {len(segments)} segments and {len(exceptions)} exceptions for job {job_id}")
    return build_figure(segments, None, exceptions, title=f"Segments (job {job_id}, version {job['version']})")


def write_html(fig: go.Figure, output: str) -> str:
    ensure_dir(os.path.dirname(output))
    fig.write_html(output)
    log(f"Saved segment view → {output}")
    return output


# -----------------------------------------------------------------------------
# CLI SUPPORT
# -----------------------------------------------------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(description="Segment Visualization Tool")
    parser.add_argument("--csv", type=str, help="Segment a voter CSV in memory and plot it")
    parser.add_argument("--job-id", type=str, help="Plot a completed job from the database")
    parser.add_argument("--database-url", type=str, help="SQLAlchemy URL (default from config)")
    parser.add_argument("--output", type=str, default="segments.html", help="HTML output path")
    args = parser.parse_args(argv)

    if bool(args.csv) == bool(args.job_id):
        parser.error("Choose either --csv OR --job-id.")

    cfg = SegmentationConfig()
    configure_logging(cfg.log_level)

    if args.csv:
        from .engine import SegmentationEngine

        outcome = SegmentationEngine(cfg).segment_dataframe(pd.read_csv(args.csv))
        fig = figure_from_outcome(outcome, title=f"Segments ({os.path.basename(args.csv)})")
    else:
        engine = make_engine(args.database_url or cfg.database_url)
        with Session(engine) as session:
            fig = figure_from_db(session, args.job_id)

    write_html(fig, args.output)


if __name__ == "__main__":
    main()
