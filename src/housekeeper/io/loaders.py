"""
Flat-table loaders for the differential-expression workflow.

Every input is a delimited text table (comma or tab, sniffed from the
file) or, for gene sets, a GMT file:

    counts        genes × samples, first column = gene id
    design        one row per sample, first column = sample id,
                  one column per factor
    expression    reference-expression table, one row per gene
    reference     exported ReferenceGeneSet (gene_id, cv)
    gene sets     GMT (name, description, genes...) or a long table with
                  gene_set and gene_id columns

Examples:
    >>> from pathlib import Path
    >>> from housekeeper.io import load_count_matrix, load_sample_design
    >>> counts = load_count_matrix(Path("counts.csv"))
    >>> design = load_sample_design(
    ...     Path("design.csv"),
    ...     references={"condition": "Low", "treatment": "Vehicle"},
    ... )
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Mapping

import numpy as np
import pandas as pd

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.design import SampleDesign
from housekeeper.stats.enrichment import GeneSet
from housekeeper.stats.reference_genes import ReferenceGeneSet

logger = logging.getLogger(__name__)

__all__ = [
    'sniff_delimiter',
    'load_count_matrix',
    'load_sample_design',
    'load_reference_expression',
    'load_reference_genes',
    'load_gene_sets',
    'load_statistics',
]


def sniff_delimiter(path: Path, sample_size: int = 8192) -> str:
    """
    Auto-detect the delimiter from file content.

    Uses csv.Sniffer, falling back to counting tabs and commas in the
    header line.
    """
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        sample = f.read(sample_size)

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters='\t,;')
        return dialect.delimiter
    except csv.Error:
        pass

    first_line = sample.split('\n')[0]
    return '\t' if first_line.count('\t') > first_line.count(',') else ','


def _read_table(path: Path, index_col: int | None = 0) -> pd.DataFrame:
    """Read a delimited table; only empty cells count as missing, so ids like 'NA' survive."""
    if not isinstance(path, Path):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        df = pd.read_csv(
            path,
            sep=sniff_delimiter(path),
            index_col=index_col,
            keep_default_na=False,
            na_values=[''],
        )
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"File is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e

    if df.empty:
        raise ValueError(f"Table contains no data: {path}")
    return df


def load_count_matrix(path: Path) -> CountMatrix:
    """
    Load a genes × samples count table.

    Raises:
        FileNotFoundError: If path does not exist.
        ValueError: If the table is malformed, has duplicated identifiers,
            or holds values that are not non-negative integers.
    """
    df = _read_table(path)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    if df.index.duplicated().any():
        dups = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Count table {path} has {len(dups)} duplicated gene ids, e.g. {dups[:5]}")

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"Count table {path} has non-numeric sample columns: {non_numeric[:5]}")

    counts = CountMatrix.from_dataframe(df)
    logger.info(f"Loaded counts: {counts.n_genes} genes × {counts.n_samples} samples from {path}")
    return counts


def load_sample_design(
    path: Path,
    references: Mapping[str, str],
    interaction: bool | tuple[str, str] | None = True,
) -> SampleDesign:
    """
    Load a per-sample factor table and declare its factors.

    Args:
        path: Table with sample ids in the first column.
        references: Factor name -> reference level, in design order.
        interaction: See :meth:`SampleDesign.from_table`.
    """
    df = _read_table(path)
    df.index = df.index.astype(str)
    design = SampleDesign.from_table(df, references=dict(references), interaction=interaction)
    logger.info(
        f"Loaded design: {design.n_samples} samples, factors "
        f"{[f'{f.name} (ref={f.reference})' for f in design.factors]}"
    )
    return design


def load_reference_expression(path: Path, id_col: str | None = None) -> pd.DataFrame:
    """Load the independent reference-expression table (one row per gene)."""
    if id_col is None:
        df = _read_table(path, index_col=0)
        df.index = df.index.astype(str)
    else:
        df = _read_table(path, index_col=None)
        if id_col not in df.columns:
            raise ValueError(f"id column '{id_col}' not in {list(df.columns)}")
    logger.info(f"Loaded reference expression: {len(df)} genes from {path}")
    return df


def load_reference_genes(path: Path) -> ReferenceGeneSet:
    """Load an exported reference gene table (``gene_id`` and ``cv``)."""
    df = _read_table(path, index_col=None)
    refset = ReferenceGeneSet.from_dataframe(df)
    logger.info(f"Loaded {refset.n_retained} reference genes from {path}")
    return refset


def _load_gmt(path: Path) -> dict[str, GeneSet]:
    gene_sets: dict[str, GeneSet] = {}
    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, start=1):
            fields = line.rstrip('\n').rstrip('\r').split('\t')
            if not fields or not fields[0].strip():
                continue
            if len(fields) < 3:
                raise ValueError(f"{path}:{line_no}: GMT lines need name, description and genes")
            name = fields[0].strip()
            if name in gene_sets:
                raise ValueError(f"{path}:{line_no}: duplicated gene set '{name}'")
            genes = tuple(dict.fromkeys(g.strip() for g in fields[2:] if g.strip()))
            gene_sets[name] = GeneSet(name=name, genes=genes, description=fields[1].strip())
    return gene_sets


def load_gene_sets(
    path: Path,
    set_col: str = 'gene_set',
    gene_col: str = 'gene_id',
) -> dict[str, GeneSet]:
    """
    Load gene sets from a GMT file or a long two-column table.

    Returns:
        Ordered mapping set name -> GeneSet.
    """
    if not isinstance(path, Path):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")

    if path.suffix.lower() == '.gmt':
        gene_sets = _load_gmt(path)
    else:
        df = _read_table(path, index_col=None)
        missing = [c for c in (set_col, gene_col) if c not in df.columns]
        if missing:
            raise ValueError(f"Gene set table {path} lacks columns {missing}; has {list(df.columns)}")
        gene_sets = {
            str(name): GeneSet(
                name=str(name),
                genes=tuple(dict.fromkeys(group[gene_col].dropna().astype(str))),
            )
            for name, group in df.groupby(set_col, sort=False)
        }

    if not gene_sets:
        raise ValueError(f"No gene sets found in {path}")
    logger.info(f"Loaded {len(gene_sets)} gene sets from {path}")
    return gene_sets


def load_statistics(path: Path, stat_col: str = 'stat') -> pd.Series:
    """Load one statistic column from a result table indexed by gene id."""
    df = _read_table(path)
    if stat_col not in df.columns:
        raise ValueError(f"Column '{stat_col}' not in {path}; has {list(df.columns)}")
    stats = pd.to_numeric(df[stat_col], errors='coerce').astype(np.float64)
    stats.index = df.index.astype(str)
    return stats
