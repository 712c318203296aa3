"""
Immutable read-count matrix.

CountMatrix couples the raw integer counts of an RNA-seq experiment with
their gene and sample identifiers. It is the only experiment-level input the
statistical engine reads besides the sample design.

Biological Context:
    - Rows = genes (unique identifiers, e.g. Ensembl IDs or symbols)
    - Columns = samples (unique library identifiers)
    - Values = non-negative integer read counts

    Counts are never modified after loading. Normalization produces a new
    array (see ``housekeeper.stats.size_factors.normalized_counts``) and
    subsetting returns a new CountMatrix.

Engineering Design:
    - Immutable: the counts array is stored read-only
    - Validated: constructor checks shape, identifiers and integrality
    - Thread-safe: workers may share the array without copying

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from housekeeper.core.countmatrix import CountMatrix
    >>>
    >>> counts = CountMatrix(
    ...     counts=np.array([[10, 20], [0, 3]]),
    ...     gene_ids=pd.Index(["ACTB", "GAPDH"]),
    ...     sample_ids=pd.Index(["S1", "S2"]),
    ... )
    >>> counts.n_genes
    2
"""

from __future__ import annotations

import numpy as np
import pandas as pd

__all__ = ['CountMatrix']


class CountMatrix:
    """
    Immutable container for a genes × samples count matrix.

    Attributes:
        counts: Integer count matrix (genes × samples), read-only
        gene_ids: Row identifiers
        sample_ids: Column identifiers

    Shape Invariants:
        - counts.shape[0] == len(gene_ids)
        - counts.shape[1] == len(sample_ids)
        - gene_ids and sample_ids are unique
    """

    def __init__(
        self,
        counts: np.ndarray,
        gene_ids: pd.Index,
        sample_ids: pd.Index,
    ):
        """
        Initialize CountMatrix with validation.

        Args:
            counts: Count matrix (genes × samples). Floats are accepted if
                they hold whole numbers.
            gene_ids: Row identifiers
            sample_ids: Column identifiers

        Raises:
            TypeError: If counts is not an ndarray or ids are not pd.Index
            ValueError: If shapes disagree, ids are duplicated, or counts
                are negative, non-finite or fractional
        """
        if not isinstance(counts, np.ndarray):
            raise TypeError(f"counts must be np.ndarray, got {type(counts)}")
        if not isinstance(gene_ids, pd.Index):
            raise TypeError(f"gene_ids must be pd.Index, got {type(gene_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")

        if counts.ndim != 2:
            raise ValueError(f"counts must be 2D, got shape {counts.shape}")

        n_genes, n_samples = counts.shape

        if len(gene_ids) != n_genes:
            raise ValueError(
                f"gene_ids length ({len(gene_ids)}) must match count rows ({n_genes})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match count columns ({n_samples})"
            )
        if gene_ids.has_duplicates:
            dupes = gene_ids[gene_ids.duplicated()].unique().tolist()[:5]
            raise ValueError(f"gene_ids must be unique, duplicated: {dupes}")
        if sample_ids.has_duplicates:
            dupes = sample_ids[sample_ids.duplicated()].unique().tolist()[:5]
            raise ValueError(f"sample_ids must be unique, duplicated: {dupes}")

        values = np.asarray(counts, dtype=np.float64)
        if not np.all(np.isfinite(values)):
            raise ValueError("counts contain NaN or infinite values")
        if np.any(values < 0):
            raise ValueError("counts must be non-negative")
        if np.any(values != np.round(values)):
            raise ValueError("counts must be whole numbers")

        stored = values.astype(np.int64)
        stored.setflags(write=False)

        self._counts = stored
        self._gene_ids = gene_ids
        self._sample_ids = sample_ids

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> CountMatrix:
        """Build from a DataFrame with gene ids as index and samples as columns."""
        return cls(
            counts=df.to_numpy(),
            gene_ids=pd.Index(df.index.astype(str)),
            sample_ids=pd.Index(df.columns.astype(str)),
        )

    @property
    def counts(self) -> np.ndarray:
        """Read-only count matrix (genes × samples)."""
        return self._counts

    @property
    def gene_ids(self) -> pd.Index:
        """Row identifiers."""
        return self._gene_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers."""
        return self._sample_ids

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_genes, n_samples)."""
        return self._counts.shape

    @property
    def n_genes(self) -> int:
        return self._counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self._counts.shape[1]

    def select_genes(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset by genes (rows).

        Args:
            mask: Boolean array/Series with one entry per gene

        Returns:
            New CountMatrix with the selected genes

        Raises:
            ValueError: If mask length doesn't match n_genes
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_genes:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_genes ({self.n_genes})"
            )

        return CountMatrix(
            counts=self._counts[mask, :],
            gene_ids=self._gene_ids[mask],
            sample_ids=self._sample_ids,
        )

    def select_samples(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """Subset by samples (columns); see :meth:`select_genes`."""
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return CountMatrix(
            counts=self._counts[:, mask],
            gene_ids=self._gene_ids,
            sample_ids=self._sample_ids[mask],
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Counts as a DataFrame (gene ids × sample ids)."""
        return pd.DataFrame(self._counts, index=self._gene_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        return (
            f"CountMatrix({self.n_genes} genes × {self.n_samples} samples)\n"
            f"  Genes: {self.gene_ids[0]}...{self.gene_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}"
        )
