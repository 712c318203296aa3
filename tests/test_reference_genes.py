"""Tests for stability-ranked reference gene selection."""

import numpy as np
import pandas as pd
import pytest

from housekeeper.core.errors import DegenerateReferenceSetError
from housekeeper.stats.reference_genes import (
    ReferenceGeneSelector,
    ReferenceGeneSet,
    coefficient_of_variation,
)

COND_A = ["a1", "a2"]
COND_B = ["b1", "b2"]


def _expression(n_genes=100, mean=500.0):
    """Genes whose spread (and so CV) grows with their index."""
    spread = np.arange(1, n_genes + 1, dtype=float)
    df = pd.DataFrame({
        "a1": mean - spread,
        "a2": mean + spread,
        "b1": mean - spread / 2,
        "b2": mean + spread / 2,
    }, index=[f"g{i:03d}" for i in range(n_genes)])
    return df


class TestCoefficientOfVariation:

    def test_matches_definition(self):
        values = np.array([[1.0, 2.0, 3.0], [10.0, 10.0, 10.0]])
        cv = coefficient_of_variation(values)
        assert cv[0] == pytest.approx(100 * np.std([1, 2, 3], ddof=1) / 2.0)
        assert cv[1] == 0.0

    def test_zero_mean_is_nan(self):
        cv = coefficient_of_variation(np.zeros((1, 4)))
        assert np.isnan(cv[0])


class TestReferenceGeneSelector:

    def test_quantile_retention_count(self):
        selector = ReferenceGeneSelector(min_expression=0, quantile=0.1)
        refset = selector.select(_expression(), COND_A, COND_B)
        # linear interpolation at position 9.9 of 100 sorted CVs keeps 10
        assert refset.n_retained == 10
        assert refset.n_considered == 100
        assert refset.gene_ids == tuple(f"g{i:03d}" for i in range(10))

    def test_cv_ascending(self):
        refset = ReferenceGeneSelector(min_expression=0, quantile=0.5).select(
            _expression(), COND_A, COND_B
        )
        assert list(refset.cv) == sorted(refset.cv)
        assert max(refset.cv) <= refset.cutoff

    def test_ties_at_cutoff_retained(self):
        df = pd.DataFrame(
            {"a1": [90.0] * 5, "a2": [110.0] * 5, "b1": [90.0] * 5, "b2": [110.0] * 5},
            index=[f"g{i}" for i in range(5)],
        )
        refset = ReferenceGeneSelector(min_expression=0, quantile=0.02).select(df, COND_A, COND_B)
        assert refset.n_retained == 5

    def test_min_expression_filter(self):
        df = _expression(20)
        df.loc["g000", :] = [1.0, 2.0, 1.0, 2.0]
        ranked = ReferenceGeneSelector(min_expression=10).rank(df, COND_A, COND_B)
        assert "g000" not in set(ranked["gene_id"])

    def test_exclude_pattern(self):
        df = _expression(20)
        df.index = ["ERCC-00002"] + list(df.index[1:])
        ranked = ReferenceGeneSelector(min_expression=0).rank(df, COND_A, COND_B)
        assert not ranked["gene_id"].str.startswith("ERCC-").any()
        assert len(ranked) == 19

    def test_duplicate_symbols_keep_lowest_cv(self):
        df = _expression(10)
        df["symbol"] = ["DUP", "X1", "X2", "X3", "X4", "X5", "X6", "X7", "X8", "DUP"]
        ranked = ReferenceGeneSelector(min_expression=0).rank(df, COND_A, COND_B, symbol_col="symbol")
        dup = ranked[ranked["symbol"] == "DUP"]
        assert len(dup) == 1
        assert dup["gene_id"].iloc[0] == "g000"

    def test_id_column(self):
        df = _expression(10).reset_index().rename(columns={"index": "ensembl"})
        refset = ReferenceGeneSelector(min_expression=0, quantile=0.2).select(
            df, COND_A, COND_B, id_col="ensembl"
        )
        assert refset.gene_ids[0] == "g000"

    def test_everything_filtered_raises(self):
        with pytest.raises(DegenerateReferenceSetError):
            ReferenceGeneSelector(min_expression=1e9).select(_expression(), COND_A, COND_B)

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="not found"):
            ReferenceGeneSelector().rank(_expression(), ["a1", "zz"], COND_B)

    def test_invalid_quantile(self):
        with pytest.raises(ValueError):
            ReferenceGeneSelector(quantile=0.0)


class TestReferenceGeneSet:

    def test_mask_and_export(self):
        refset = ReferenceGeneSelector(min_expression=0, quantile=0.1).select(
            _expression(), COND_A, COND_B
        )
        mask = refset.as_mask(["g000", "g050", "g009"])
        np.testing.assert_array_equal(mask, [True, False, True])

        again = ReferenceGeneSet.from_dataframe(refset.to_dataframe())
        assert again.gene_ids == refset.gene_ids
        assert again.cv == pytest.approx(refset.cv)
