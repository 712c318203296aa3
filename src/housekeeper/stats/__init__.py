"""
Statistical stages of the differential-expression workflow.

Exports:
- Reference gene selection by expression stability
- Reference-restricted size factors
- Negative-binomial GLM fitting with shrunk dispersions
- Wald contrasts, independent filtering and FDR correction
- Correlation-aware rank enrichment of gene sets
"""

from .reference_genes import (
    ReferenceGeneSelector,
    ReferenceGeneSet,
    coefficient_of_variation,
)
from .size_factors import (
    SizeFactorEstimator,
    SizeFactors,
    normalized_counts,
)
from .dispersion import DispersionTrend
from .glm import (
    GLMFit,
    GLMFitSet,
    NegativeBinomialModelFitter,
)
from .contrasts import (
    Contrast,
    ContrastEngine,
    DEResult,
    fdr_correction,
    independent_filter,
)
from .enrichment import (
    EnrichmentResult,
    GeneSet,
    RankEnrichmentTester,
    estimate_inter_gene_correlation,
)

__all__ = [
    "ReferenceGeneSelector",
    "ReferenceGeneSet",
    "coefficient_of_variation",
    "SizeFactorEstimator",
    "SizeFactors",
    "normalized_counts",
    "DispersionTrend",
    "GLMFit",
    "GLMFitSet",
    "NegativeBinomialModelFitter",
    "Contrast",
    "ContrastEngine",
    "DEResult",
    "fdr_correction",
    "independent_filter",
    "EnrichmentResult",
    "GeneSet",
    "RankEnrichmentTester",
    "estimate_inter_gene_correlation",
]
