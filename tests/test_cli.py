"""Smoke tests for the housekeeper command line."""

import numpy as np
import pandas as pd
import pytest
import yaml

from conftest import INTERACTION, simulate_experiment
from housekeeper.cli import main
from housekeeper.cli.run import parse_factors, parse_weights


@pytest.fixture(scope="module")
def workspace(tmp_path_factory):
    """Counts, design, reference expression and gene sets on disk."""
    root = tmp_path_factory.mktemp("housekeeper")
    counts, design, truth = simulate_experiment(seed=11)

    counts.to_dataframe().to_csv(root / "counts.csv", index_label="gene_id")
    design.table.astype(str).to_csv(root / "design.csv", index_label="sample_id")

    # reference expression: null genes stable, DE genes variable
    rng = np.random.default_rng(3)
    genes = list(counts.gene_ids)
    level = rng.uniform(100, 1000, size=len(genes))
    noise = np.where(np.isin(genes, truth["de_genes"]), 0.8, 0.05)
    values = level[:, None] * (1 + noise[:, None] * rng.normal(size=(len(genes), 4)))
    expression = pd.DataFrame(np.abs(values), index=genes, columns=["wt_1", "wt_2", "ko_1", "ko_2"])
    expression.to_csv(root / "reference_expression.csv", index_label="gene_id")

    with open(root / "sets.gmt", "w") as f:
        f.write("de\tinteraction genes\t" + "\t".join(truth["de_genes"]) + "\n")
        f.write("null\trandom genes\t" + "\t".join(truth["null_genes"][:15]) + "\n")

    return root, truth


def _select_reference(root):
    return main([
        "select-reference",
        "--expression", str(root / "reference_expression.csv"),
        "--condition-a-cols", "wt_1", "wt_2",
        "--condition-b-cols", "ko_1", "ko_2",
        "--quantile", "0.5",
        "--output", str(root / "reference_genes.csv"),
    ])


@pytest.fixture(scope="module")
def run_output(workspace):
    """Output directory of one full 'run' invocation."""
    root, _ = workspace
    assert _select_reference(root) == 0
    out = root / "results"
    code = main([
        "run",
        "--counts", str(root / "counts.csv"),
        "--design", str(root / "design.csv"),
        "--reference-genes", str(root / "reference_genes.csv"),
        "--factor", "condition:Low",
        "--factor", "treatment:Vehicle",
        "--coefficient", INTERACTION,
        "--gene-sets", str(root / "sets.gmt"),
        "--n-jobs", "2",
        "--output", str(out),
    ])
    assert code == 0
    return out


class TestSelectReference:

    def test_writes_reference_table(self, workspace):
        root, truth = workspace
        assert _select_reference(root) == 0
        table = pd.read_csv(root / "reference_genes.csv")
        assert list(table.columns[:2]) == ["gene_id", "cv"]
        assert len(table) == 50
        assert not set(table["gene_id"]) & set(truth["de_genes"])

    def test_missing_expression(self, workspace, capsys):
        root, _ = workspace
        assert main(["select-reference", "--output", str(root / "x.csv")]) == 1
        assert "--expression is required" in capsys.readouterr().out


class TestRun:

    def test_full_run(self, run_output):
        out = run_output
        for name in ("de_results.csv", "de_results.filter_curve.csv", "size_factors.csv",
                     "dispersions.csv", "enrichment.csv"):
            assert (out / name).exists(), name

        de = pd.read_csv(out / "de_results.csv", index_col=0)
        assert len(de) == 100
        assert de.index.name == "gene_id"
        assert len(pd.read_csv(out / "size_factors.csv")) == 16
        enrichment = pd.read_csv(out / "enrichment.csv", index_col=0, keep_default_na=False)
        assert set(enrichment.index) == {"de", "null"}

    def test_run_from_config(self, workspace):
        root, _ = workspace
        assert _select_reference(root) == 0
        config = {
            "counts": str(root / "counts.csv"),
            "design": str(root / "design.csv"),
            "reference_genes": str(root / "reference_genes.csv"),
            "output": str(root / "config_results"),
            "factors": {"condition": "Low", "treatment": "Vehicle"},
            "contrast": {"weights": {"treatment_Inhibitor_vs_Vehicle": 1, INTERACTION: 1}},
            "fit": {"trend_kind": "mean"},
        }
        config_path = root / "run.yaml"
        config_path.write_text(yaml.safe_dump(config))
        assert main(["run", "--config", str(config_path), "--no-filtering"]) == 0
        de = pd.read_csv(root / "config_results" / "de_results.csv", index_col=0)
        assert not de["filtered"].any()
        assert not (root / "config_results" / "de_results.filter_curve.csv").exists()

    def test_config_tunes_filtering_and_naming(self, workspace, capsys):
        root, _ = workspace
        assert _select_reference(root) == 0
        config = {
            "counts": str(root / "counts.csv"),
            "design": str(root / "design.csv"),
            "reference_genes": str(root / "reference_genes.csv"),
            "output": str(root / "tuned_results"),
            "factors": {"condition": "Low", "treatment": "Vehicle"},
            "fit": {"tol": 1e-5, "min_disp": 1e-6, "trend_kind": "mean"},
            "contrast": {"coefficient": INTERACTION, "n_quantiles": 20, "name": "inhibitor_in_high"},
        }
        config_path = root / "tuned.yaml"
        config_path.write_text(yaml.safe_dump(config))
        assert main(["run", "--config", str(config_path)]) == 0
        curve = pd.read_csv(root / "tuned_results" / "de_results.filter_curve.csv")
        assert len(curve) == 20
        assert "Contrast: inhibitor_in_high" in capsys.readouterr().out

    def test_requires_one_contrast_form(self, workspace, capsys):
        root, _ = workspace
        code = main([
            "run",
            "--counts", str(root / "counts.csv"),
            "--design", str(root / "design.csv"),
            "--reference-genes", str(root / "counts.csv"),
            "--factor", "condition:Low",
            "--output", str(root / "bad"),
        ])
        assert code == 1
        assert "exactly one of --coefficient or --contrast" in capsys.readouterr().out

    def test_bad_reference_level(self, workspace, capsys):
        root, _ = workspace
        assert _select_reference(root) == 0
        code = main([
            "run",
            "--counts", str(root / "counts.csv"),
            "--design", str(root / "design.csv"),
            "--reference-genes", str(root / "reference_genes.csv"),
            "--factor", "condition:Medium",
            "--coefficient", INTERACTION,
            "--output", str(root / "bad"),
        ])
        assert code == 1
        assert "ERROR" in capsys.readouterr().out


class TestEnrich:

    def test_enrich_on_results(self, workspace, run_output):
        root, _ = workspace
        results = run_output / "de_results.csv"
        out = root / "enrichment_only.csv"
        code = main([
            "enrich",
            "--results", str(results),
            "--gene-sets", str(root / "sets.gmt"),
            "--no-ranks",
            "--output", str(out),
        ])
        assert code == 0
        table = pd.read_csv(out, index_col=0)
        assert table.loc["de", "direction"] == "Up"

    def test_missing_stat_column(self, workspace, capsys):
        root, _ = workspace
        code = main([
            "enrich",
            "--results", str(root / "counts.csv"),
            "--gene-sets", str(root / "sets.gmt"),
            "--output", str(root / "never.csv"),
        ])
        assert code == 1
        assert "Column 'stat'" in capsys.readouterr().out


class TestArgumentParsing:

    def test_parse_factors(self):
        assert parse_factors(["condition:Low", "treatment:Vehicle"]) == {
            "condition": "Low", "treatment": "Vehicle",
        }

    @pytest.mark.parametrize("spec", [["condition"], ["condition:"], ["a:x", "a:y"]])
    def test_parse_factors_invalid(self, spec):
        with pytest.raises(ValueError):
            parse_factors(spec)

    def test_parse_weights(self):
        assert parse_weights("a=1, b=-0.5") == {"a": 1.0, "b": -0.5}

    def test_parse_weights_invalid(self):
        with pytest.raises(ValueError):
            parse_weights("a")

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "housekeeper" in capsys.readouterr().out
