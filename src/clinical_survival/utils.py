from __future__ import annotations
import os
import datetime as dt
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd


def ensure_dir(path: str):
    """Create directory if it doesn't exist.

    Creates the specified directory path, including any necessary parent
    directories. Does nothing if the directory already exists.

    Args:
        path: Directory path to create

    Example:
        >>> ensure_dir("outputs/tables")
    """
    os.makedirs(path, exist_ok=True)


def versioned_name(base: str, source: Optional[str] = None) -> str:
    """Generate timestamped name for a run directory.

    Args:
        base: Base name
        source: Optional data source ("simulate", "gdc", "file") to prefix the name

    Returns:
        Versioned name in format "[source_]base_YYYYMMDD_HHMMSS"

    Example:
        >>> versioned_name("run", source="gdc")
        'gdc_run_20260117_143052'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    if source:
        return f"{source}_{base}_{ts}"
    return f"{base}_{ts}"


def get_output_paths(output_dir) -> dict:
    """Get standardized output directory paths for a run.

    Args:
        output_dir: Root directory of the run

    Returns:
        Dictionary with keys:
        - base_dir: Root output directory for this run
        - data: Canonical record set
        - tables: Ledgers, coefficient tables and validation summaries
        - logs: Log files
        - mlruns: Directory for MLflow tracking

    Notes:
        - All paths are created if they don't exist
    """
    base_dir = str(output_dir)

    paths = {
        "base_dir": base_dir,
        "data": os.path.join(base_dir, "data"),
        "tables": os.path.join(base_dir, "tables"),
        "logs": os.path.join(base_dir, "logs"),
        "mlruns": os.path.join(base_dir, "mlruns"),
    }

    for path in paths.values():
        ensure_dir(path)

    return paths


def save_table(df: pd.DataFrame, outdir: str, filename: str, index: bool = False) -> str:
    """Save a summary table to CSV.

    Args:
        df: Table to write
        outdir: Output directory (created if missing)
        filename: CSV file name
        index: Whether to write the DataFrame index

    Returns:
        Full path to the saved CSV file

    Example:
        >>> path = save_table(cox_table, "outputs/tables", "cox_summary.csv")
    """
    ensure_dir(outdir)
    path = os.path.join(outdir, filename)
    df.to_csv(path, index=index)
    return path


def save_text(lines: Iterable[str], outdir: str, filename: str) -> str:
    """Write plain-text summary lines to a file.

    Args:
        lines: Lines to write (newlines added)
        outdir: Output directory (created if missing)
        filename: Text file name

    Returns:
        Full path to the saved file
    """
    ensure_dir(outdir)
    path = Path(outdir) / filename
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(f"{line}\n")
    return str(path)
