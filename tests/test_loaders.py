"""Tests for the flat-table loaders."""

import numpy as np
import pandas as pd
import pytest

from housekeeper.io import (
    load_count_matrix,
    load_gene_sets,
    load_sample_design,
    load_statistics,
)


class TestIdentifiersThatLookMissing:
    """Strings pandas treats as missing by default are real identifiers here."""

    def test_count_matrix_gene_ids(self, tmp_path):
        path = tmp_path / "counts.csv"
        pd.DataFrame(
            {"s1": [5, 0, 12], "s2": [7, 3, 9]},
            index=pd.Index(["NA", "null", "GAPDH"], name="gene_id"),
        ).to_csv(path)

        counts = load_count_matrix(path)

        assert list(counts.gene_ids) == ["NA", "null", "GAPDH"]
        assert counts.counts[0].tolist() == [5, 7]

    def test_design_levels(self, tmp_path):
        path = tmp_path / "design.tsv"
        path.write_text("sample_id\tgenotype\ns1\tNA\ns2\tNA\ns3\tWT\ns4\tWT\n")

        design = load_sample_design(path, references={"genotype": "NA"}, interaction=False)

        factor = design.factor("genotype")
        assert factor.reference == "NA"
        assert factor.levels == ("NA", "WT")

    def test_long_gene_set_table(self, tmp_path):
        path = tmp_path / "sets.csv"
        pd.DataFrame({
            "gene_set": ["null", "null", "NaN", "NaN"],
            "gene_id": ["NA", "GAPDH", "N/A", "ACTB"],
        }).to_csv(path, index=False)

        gene_sets = load_gene_sets(path)

        assert list(gene_sets) == ["null", "NaN"]
        assert gene_sets["null"].genes == ("NA", "GAPDH")
        assert gene_sets["NaN"].genes == ("N/A", "ACTB")

    def test_statistics_keep_ids_and_blank_values(self, tmp_path):
        path = tmp_path / "results.csv"
        path.write_text("gene_id,stat,pvalue\nNA,2.5,0.01\nnull,,\nGAPDH,-1.0,0.3\n")

        stats = load_statistics(path)

        assert list(stats.index) == ["NA", "null", "GAPDH"]
        assert stats["NA"] == pytest.approx(2.5)
        assert np.isnan(stats["null"])
        assert stats.dtype == np.float64


class TestLoaderErrors:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_count_matrix(tmp_path / "absent.csv")

    def test_duplicated_gene_ids(self, tmp_path):
        path = tmp_path / "counts.csv"
        path.write_text("gene_id,s1,s2\nA,1,2\nA,3,4\n")
        with pytest.raises(ValueError, match="duplicated gene ids"):
            load_count_matrix(path)
