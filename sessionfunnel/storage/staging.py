"""
Staging Sink

Writes the sessionized table as parquet and hands it to the staging area
(the directory the warehouse copies from). Files appear in the stage
atomically so a polling reader never sees a half-written file.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Union

import pandas as pd

from sessionfunnel.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


def write_to_parquet(df: pd.DataFrame, path: Union[str, Path]) -> Path:
    """Write a sessionized frame to parquet with microsecond timestamps."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    out = df.copy()
    out["timestamp"] = out["timestamp"].astype("datetime64[us]")
    out.to_parquet(path, index=False, compression="snappy")

    logger.info(f"💾 Wrote {len(out):,} rows to {path}")
    return path


def stage_file(path: Union[str, Path], stage_dir: Union[str, Path]) -> Path:
    """
    Move a local file into the staging area and remove the local copy.

    Returns:
        Path of the staged file
    """
    path = Path(path)
    stage_dir = Path(stage_dir)
    target = stage_dir / path.name
    partial = target.with_name(target.name + ".tmp")

    try:
        stage_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, partial)
        os.replace(partial, target)
        path.unlink()
    except OSError as e:
        raise UpstreamUnavailableError(f"Could not stage {path} into {stage_dir}: {e}") from e

    logger.info(f"📤 Staged {path.name} into {stage_dir}")
    return target


def stage_events(df: pd.DataFrame, data_path: Union[str, Path], stage_dir: Union[str, Path]) -> Path:
    """Write the sessionized table locally, then stage it."""
    return stage_file(write_to_parquet(df, data_path), stage_dir)
