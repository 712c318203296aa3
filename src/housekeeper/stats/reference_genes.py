"""
Stability-ranked reference gene selection.

Selects a set of expression-stable genes from an independent dataset
measured under two reference conditions. The selected genes replace the
full transcriptome as the basis for size-factor estimation, which protects
normalization against global shifts in expression between the experiment's
conditions.

Algorithm:
    1. Drop genes whose summed expression over both conditions is below
       ``min_expression`` (and genes with zero mean, whose CV is undefined)
    2. CV = 100 * sd / mean over each gene's value set (sd with ddof=1)
    3. Resolve duplicated symbols by keeping the lowest-CV occurrence
    4. Drop identifiers matching ``exclude_pattern`` (spike-in controls)
    5. Sort ascending by CV and keep every gene at or below the CV found
       at the requested quantile

Examples:
    >>> selector = ReferenceGeneSelector(min_expression=10, quantile=0.02)
    >>> refset = selector.select(
    ...     expression, condition_a=["wt_1", "wt_2"], condition_b=["ko_1", "ko_2"],
    ...     symbol_col="symbol",
    ... )
    >>> refset.n_retained
    312
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from housekeeper.core.errors import DegenerateReferenceSetError

logger = logging.getLogger(__name__)

__all__ = ['ReferenceGeneSet', 'ReferenceGeneSelector', 'coefficient_of_variation']


@dataclass(frozen=True)
class ReferenceGeneSet:
    """Ordered reference genes with their stability scores.

    Attributes:
        gene_ids: Selected identifiers, ascending CV.
        cv: Coefficient of variation (percent) per selected gene.
        quantile: Retention quantile used for the cutoff.
        cutoff: CV value at the quantile (inclusive bound).
        n_considered: Genes that survived filtering and entered ranking.
    """

    gene_ids: tuple[str, ...]
    cv: tuple[float, ...]
    quantile: float
    cutoff: float
    n_considered: int

    @property
    def n_retained(self) -> int:
        return len(self.gene_ids)

    def as_mask(self, gene_ids: Sequence[str] | pd.Index) -> NDArray[np.bool_]:
        """Boolean membership mask over an experiment's gene identifiers."""
        members = set(self.gene_ids)
        return np.array([str(g) in members for g in gene_ids], dtype=bool)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({'gene_id': list(self.gene_ids), 'cv': list(self.cv)})

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, quantile: float = float('nan')) -> ReferenceGeneSet:
        """Rebuild from an exported table with ``gene_id`` and ``cv`` columns."""
        if 'gene_id' not in df.columns:
            raise ValueError(f"Reference gene table needs a 'gene_id' column, got {list(df.columns)}")
        if 'cv' in df.columns:
            ordered = df.sort_values('cv', kind='mergesort')
            cv = tuple(float(v) for v in ordered['cv'])
        else:
            ordered = df
            cv = tuple(float('nan') for _ in range(len(df)))
        cutoff = max(cv) if cv and not np.isnan(cv[-1]) else float('nan')
        return cls(
            gene_ids=tuple(str(g) for g in ordered['gene_id']),
            cv=cv,
            quantile=quantile,
            cutoff=cutoff,
            n_considered=len(df),
        )


def coefficient_of_variation(values: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Row-wise coefficient of variation in percent.

    Rows with zero mean get NaN (undefined CV).
    """
    values = np.asarray(values, dtype=np.float64)
    mean = values.mean(axis=1)
    sd = values.std(axis=1, ddof=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        cv = 100.0 * sd / mean
    cv[mean == 0] = np.nan
    return cv


class ReferenceGeneSelector:
    """
    Rank genes by expression stability and keep the most stable fraction.

    Params:
        min_expression: Minimum summed expression across both conditions.
        exclude_pattern: Regex for identifiers to drop (e.g. ``^ERCC-``).
        quantile: Retention quantile of the CV distribution (0.02 keeps
            the lowest 2%).
    """

    def __init__(
        self,
        min_expression: float = 10.0,
        exclude_pattern: str | None = r"^ERCC-",
        quantile: float = 0.02,
    ):
        if not 0 < quantile <= 1:
            raise ValueError(f"quantile must be in (0, 1], got {quantile}")
        if min_expression < 0:
            raise ValueError(f"min_expression must be non-negative, got {min_expression}")
        self.min_expression = min_expression
        self.exclude_pattern = exclude_pattern
        self.quantile = quantile

    def rank(
        self,
        expression: pd.DataFrame,
        condition_a: Sequence[str],
        condition_b: Sequence[str],
        id_col: str | None = None,
        symbol_col: str | None = None,
    ) -> pd.DataFrame:
        """
        Filter and rank all candidate genes by CV.

        Args:
            expression: One row per gene with expression value columns.
            condition_a: Value columns measured under the first condition.
            condition_b: Value columns measured under the second condition.
            id_col: Column holding gene identifiers (default: the index).
            symbol_col: Optional symbol column used to resolve duplicates.

        Returns:
            DataFrame with ``gene_id``, optional ``symbol``, ``total`` and
            ``cv`` columns, sorted ascending by CV.
        """
        value_cols = list(condition_a) + list(condition_b)
        if not condition_a or not condition_b:
            raise ValueError("Both reference conditions need at least one value column")
        missing = [c for c in value_cols if c not in expression.columns]
        if missing:
            raise ValueError(f"Expression columns not found: {missing}")
        if len(value_cols) < 2:
            raise ValueError("CV needs at least two values per gene")

        gene_ids = expression[id_col] if id_col is not None else expression.index.to_series()
        values = expression[value_cols].to_numpy(dtype=np.float64)

        ranked = pd.DataFrame({
            'gene_id': gene_ids.astype(str).values,
            'total': values.sum(axis=1),
            'cv': coefficient_of_variation(values),
        })
        if symbol_col is not None:
            ranked['symbol'] = expression[symbol_col].astype(str).values

        n_input = len(ranked)
        ranked = ranked[ranked['total'] >= self.min_expression]
        ranked = ranked[ranked['cv'].notna()]
        logger.info(
            f"Reference ranking: {len(ranked)}/{n_input} genes pass "
            f"min_expression={self.min_expression} with defined CV"
        )

        ranked = ranked.sort_values(['cv', 'gene_id'], kind='mergesort')
        dedup_key = 'symbol' if symbol_col is not None else 'gene_id'
        n_before = len(ranked)
        ranked = ranked.drop_duplicates(subset=dedup_key, keep='first')
        if len(ranked) < n_before:
            logger.info(f"Resolved {n_before - len(ranked)} duplicated {dedup_key} entries (lowest CV kept)")

        if self.exclude_pattern:
            pattern = re.compile(self.exclude_pattern)
            excluded = ranked['gene_id'].map(lambda g: bool(pattern.search(g)))
            if symbol_col is not None:
                excluded |= ranked['symbol'].map(lambda s: bool(pattern.search(s)))
            if excluded.any():
                logger.info(f"Excluded {int(excluded.sum())} identifiers matching '{self.exclude_pattern}'")
            ranked = ranked[~excluded]

        return ranked.reset_index(drop=True)

    def select(
        self,
        expression: pd.DataFrame,
        condition_a: Sequence[str],
        condition_b: Sequence[str],
        id_col: str | None = None,
        symbol_col: str | None = None,
    ) -> ReferenceGeneSet:
        """
        Select the most stable genes; see :meth:`rank` for arguments.

        Returns:
            ReferenceGeneSet ordered by ascending CV.

        Raises:
            DegenerateReferenceSetError: If no gene survives filtering.
        """
        ranked = self.rank(expression, condition_a, condition_b, id_col, symbol_col)
        if ranked.empty:
            raise DegenerateReferenceSetError(
                "No genes survived reference filtering "
                f"(min_expression={self.min_expression}, exclude_pattern={self.exclude_pattern!r})"
            )

        cv = ranked['cv'].to_numpy()
        cutoff = float(np.quantile(cv, self.quantile))
        selected = ranked[ranked['cv'] <= cutoff]

        logger.info(
            f"Selected {len(selected)}/{len(ranked)} reference genes "
            f"(quantile={self.quantile}, CV cutoff={cutoff:.3f}%)"
        )

        return ReferenceGeneSet(
            gene_ids=tuple(selected['gene_id']),
            cv=tuple(float(v) for v in selected['cv']),
            quantile=self.quantile,
            cutoff=cutoff,
            n_considered=len(ranked),
        )
