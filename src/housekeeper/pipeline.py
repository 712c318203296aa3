"""
End-to-end orchestration of the differential-expression workflow.

    reference genes -> size factors -> NB GLM fit -> contrast -> enrichment

Every stage returns a new immutable value that the next stage consumes;
nothing is accumulated on a shared model object. Fatal errors
(DataAlignmentError, DegenerateReferenceSetError, SingularDesignError)
propagate before any result is produced.

Examples:
    >>> result = run_pipeline(
    ...     counts, design, reference_genes,
    ...     coefficient="conditionHigh.treatmentInhibitor",
    ...     gene_sets=gene_sets,
    ... )
    >>> result.de.significant().head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

import pandas as pd

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.design import SampleDesign, build_design_matrix
from housekeeper.stats.contrasts import Contrast, ContrastEngine, DEResult
from housekeeper.stats.enrichment import EnrichmentResult, GeneSet, RankEnrichmentTester
from housekeeper.stats.glm import GLMFitSet, NegativeBinomialModelFitter
from housekeeper.stats.reference_genes import ReferenceGeneSet
from housekeeper.stats.size_factors import SizeFactorEstimator, SizeFactors

logger = logging.getLogger(__name__)

__all__ = ['PipelineResult', 'run_pipeline', 'resolve_contrast', 'summarize']


@dataclass(frozen=True)
class PipelineResult:
    """Outputs of every stage of one run."""

    reference_genes: ReferenceGeneSet
    size_factors: SizeFactors
    fit: GLMFitSet
    de: DEResult
    enrichment: EnrichmentResult | None = None


def resolve_contrast(
    design: SampleDesign,
    coefficient: str | None = None,
    weights: Mapping[str, float] | None = None,
    vector: Sequence[float] | None = None,
    name: str | None = None,
) -> Contrast:
    """
    Build a Contrast against the design's columns from exactly one spec.

    Raises:
        ValueError: Unless exactly one of coefficient, weights, vector is set.
    """
    given = [x is not None for x in (coefficient, weights, vector)]
    if sum(given) != 1:
        raise ValueError("Specify exactly one of coefficient, weights or vector")

    dm = build_design_matrix(design)
    if coefficient is not None:
        return Contrast.combination(dm, {coefficient: 1.0}, name=name or coefficient)
    if weights is not None:
        return Contrast.combination(dm, weights, name=name)
    return Contrast.from_vector(dm, vector, name=name or "contrast")


def run_pipeline(
    counts: CountMatrix,
    design: SampleDesign,
    reference_genes: ReferenceGeneSet,
    contrast: Contrast | None = None,
    coefficient: str | None = None,
    gene_sets: Mapping[str, Sequence[str] | GeneSet] | None = None,
    estimator: SizeFactorEstimator | None = None,
    fitter: NegativeBinomialModelFitter | None = None,
    engine: ContrastEngine | None = None,
    tester: RankEnrichmentTester | None = None,
) -> PipelineResult:
    """
    Run normalization, GLM fitting, contrast testing and enrichment.

    Args:
        counts: Experiment counts.
        design: Sample design aligned with ``counts`` columns.
        reference_genes: Reference set from ReferenceGeneSelector.
        contrast: Contrast to test (or use ``coefficient``).
        coefficient: Name of a single design coefficient to test.
        gene_sets: Optional gene sets for enrichment on the ``stat`` column.
        estimator, fitter, engine, tester: Stage objects; defaults when None.

    Returns:
        PipelineResult

    Raises:
        DataAlignmentError: Design and counts disagree on samples.
        DegenerateReferenceSetError: Too few usable reference genes.
        SingularDesignError: The shared design is rank-deficient.
    """
    design.validate_alignment(counts)
    if contrast is None:
        contrast = resolve_contrast(design, coefficient=coefficient)
    elif coefficient is not None:
        raise ValueError("Pass either contrast or coefficient, not both")

    estimator = estimator or SizeFactorEstimator()
    fitter = fitter or NegativeBinomialModelFitter()
    engine = engine or ContrastEngine()

    mask = reference_genes.as_mask(counts.gene_ids)
    logger.info(f"{int(mask.sum())}/{reference_genes.n_retained} reference genes present in the counts")
    size_factors = estimator.estimate(counts, mask)

    fitset = fitter.fit(counts, design, size_factors)
    de = engine.test(fitset, contrast)

    enrichment = None
    if gene_sets:
        tester = tester or RankEnrichmentTester()
        enrichment = tester.test(de.table['stat'], gene_sets)

    return PipelineResult(
        reference_genes=reference_genes,
        size_factors=size_factors,
        fit=fitset,
        de=de,
        enrichment=enrichment,
    )


def summarize(result: PipelineResult) -> pd.Series:
    """One-line run summary for logs and reports."""
    table = result.de.table
    return pd.Series({
        'n_genes': len(table),
        'n_reference_genes': result.size_factors.n_reference_genes,
        'n_converged': int(table['converged'].sum()),
        'n_low_confidence': int(table['low_confidence'].sum()),
        'n_filtered': int(table['filtered'].sum()),
        'n_significant': int((table['padj'] < result.de.alpha).sum()),
        'dispersion_trend': result.fit.trend.kind,
        'n_gene_sets': 0 if result.enrichment is None else len(result.enrichment),
    })
