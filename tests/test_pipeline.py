"""End-to-end tests for run_pipeline."""

import numpy as np
import pytest

from conftest import INTERACTION, reference_set_for, simulate_experiment
from housekeeper.core.design import SampleDesign
from housekeeper.core.errors import DataAlignmentError, DegenerateReferenceSetError
from housekeeper.pipeline import PipelineResult, resolve_contrast, run_pipeline, summarize
from housekeeper.stats.contrasts import ContrastEngine


@pytest.fixture(scope="module")
def pipeline_result(experiment, reference_genes):
    counts, design, truth = experiment
    gene_sets = {
        "de": truth["de_genes"],
        "null": truth["null_genes"][:20],
    }
    return run_pipeline(
        counts, design, reference_genes,
        coefficient=INTERACTION,
        gene_sets=gene_sets,
    )


class TestRunPipeline:

    def test_stages_present(self, pipeline_result):
        assert isinstance(pipeline_result, PipelineResult)
        assert pipeline_result.enrichment is not None
        assert pipeline_result.de.contrast.name == INTERACTION
        assert len(pipeline_result.de) == 100

    def test_size_factors_recovered(self, experiment, pipeline_result):
        _, _, truth = experiment
        np.testing.assert_allclose(
            pipeline_result.size_factors.as_array(), truth["size_factors"], rtol=0.15,
        )

    def test_interaction_genes_detected(self, experiment, pipeline_result):
        _, _, truth = experiment
        padj = pipeline_result.de.table["padj"]
        assert (padj[truth["de_genes"]] < 0.05).sum() >= 4
        # null genes: false positives at most 5%
        assert (padj[truth["null_genes"]] < 0.05).sum() <= 0.05 * len(truth["null_genes"])

    def test_enrichment_on_wald_statistic(self, pipeline_result):
        table = pipeline_result.enrichment.table
        assert table.loc["de", "direction"] == "Up"
        assert table.loc["de", "pvalue"] < table.loc["null", "pvalue"]

    def test_summarize(self, pipeline_result):
        summary = summarize(pipeline_result)
        assert summary["n_genes"] == 100
        assert summary["n_reference_genes"] == 95
        assert summary["n_converged"] == 100
        assert summary["n_gene_sets"] == 2
        assert summary["n_filtered"] == int(pipeline_result.de.table["filtered"].sum())

    def test_without_gene_sets(self, experiment, reference_genes):
        counts, design, _ = experiment
        result = run_pipeline(
            counts, design, reference_genes,
            coefficient="condition_High_vs_Low",
            engine=ContrastEngine(independent_filtering=False),
        )
        assert result.enrichment is None
        assert summarize(result)["n_gene_sets"] == 0


class TestPipelineErrors:

    def test_misaligned_design(self, experiment, reference_genes):
        counts, design, _ = experiment
        reordered = SampleDesign(
            table=design.table.iloc[::-1], factors=design.factors, interaction=design.interaction,
        )
        with pytest.raises(DataAlignmentError):
            run_pipeline(counts, reordered, reference_genes, coefficient=INTERACTION)

    def test_degenerate_reference_set(self, experiment):
        counts, design, truth = experiment
        with pytest.raises(DegenerateReferenceSetError):
            run_pipeline(counts, design, reference_set_for(truth["null_genes"][:5]), coefficient=INTERACTION)

    def test_unknown_reference_genes_ignored(self):
        counts, design, truth = simulate_experiment(n_genes=40, seed=7)
        refset = reference_set_for(list(truth["null_genes"]) + ["not_measured"])
        result = run_pipeline(
            counts, design, refset, coefficient=INTERACTION,
            engine=ContrastEngine(independent_filtering=False),
        )
        assert result.size_factors.n_reference_genes == len(truth["null_genes"])

    def test_contrast_and_coefficient_conflict(self, experiment, reference_genes):
        counts, design, _ = experiment
        contrast = resolve_contrast(design, coefficient=INTERACTION)
        with pytest.raises(ValueError, match="not both"):
            run_pipeline(counts, design, reference_genes, contrast=contrast, coefficient=INTERACTION)


class TestResolveContrast:

    def test_exactly_one_form(self, experiment):
        _, design, _ = experiment
        with pytest.raises(ValueError, match="exactly one"):
            resolve_contrast(design)
        with pytest.raises(ValueError, match="exactly one"):
            resolve_contrast(design, coefficient=INTERACTION, vector=[0, 0, 0, 1])

    def test_weights_and_vector(self, experiment):
        _, design, _ = experiment
        by_weights = resolve_contrast(
            design, weights={"treatment_Inhibitor_vs_Vehicle": 1, INTERACTION: 1}, name="in_high",
        )
        by_vector = resolve_contrast(design, vector=[0, 0, 1, 1])
        assert by_weights.name == "in_high"
        assert by_weights.vector.tolist() == by_vector.vector.tolist()

    def test_unknown_coefficient(self, experiment):
        _, design, _ = experiment
        with pytest.raises(KeyError):
            resolve_contrast(design, coefficient="conditionHigh")

    def test_named_coefficient(self, experiment):
        _, design, _ = experiment
        assert resolve_contrast(design, coefficient=INTERACTION).name == INTERACTION
        renamed = resolve_contrast(design, coefficient=INTERACTION, name="inhibitor_in_high")
        assert renamed.name == "inhibitor_in_high"
        assert renamed.vector.tolist() == [0.0, 0.0, 0.0, 1.0]
