"""
CSV writers for stage outputs.

Each stage result is written as a flat table:

    {path}                       main table (DE results, enrichment, ...)
    {stem}.filter_curve.csv      rejections per filtering cutoff (DE only)

Parent directories are created as needed; existing files are overwritten.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from housekeeper.stats.contrasts import DEResult
from housekeeper.stats.enrichment import EnrichmentResult
from housekeeper.stats.glm import GLMFitSet
from housekeeper.stats.reference_genes import ReferenceGeneSet
from housekeeper.stats.size_factors import SizeFactors

logger = logging.getLogger(__name__)

__all__ = [
    'write_table',
    'write_reference_genes',
    'write_size_factors',
    'write_dispersions',
    'write_de_result',
    'write_enrichment_result',
]


def write_table(df: pd.DataFrame, path: Path, index: bool = True) -> Path:
    """Write a DataFrame as CSV, creating parent directories."""
    if not isinstance(path, Path):
        path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)
    logger.info(f"Wrote {len(df)} rows to {path}")
    return path


def write_reference_genes(refset: ReferenceGeneSet, path: Path) -> Path:
    return write_table(refset.to_dataframe(), path, index=False)


def write_size_factors(size_factors: SizeFactors, path: Path) -> Path:
    return write_table(size_factors.to_dataframe(), path, index=False)


def write_dispersions(fitset: GLMFitSet, path: Path) -> Path:
    """Per-gene dispersion table (mom, raw, trend, final, outlier) with baseMean."""
    df = fitset.dispersions.copy()
    df.insert(0, 'baseMean', fitset.base_mean)
    df.index.name = 'gene_id'
    return write_table(df, path)


def write_de_result(result: DEResult, path: Path, write_curve: bool = True) -> Path:
    """
    Write a DEResult table, plus its filtering curve when one exists.

    Returns:
        Path of the main table.
    """
    if not isinstance(path, Path):
        path = Path(path)
    out = write_table(result.to_dataframe(), path)
    if write_curve and not result.rejection_curve.empty:
        write_table(result.rejection_curve, path.with_name(f"{path.stem}.filter_curve.csv"), index=False)
    return out


def write_enrichment_result(result: EnrichmentResult, path: Path) -> Path:
    return write_table(result.to_dataframe(), path)
