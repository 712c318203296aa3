"""
housekeeper - Reference-Gene-Normalized Differential Expression

A pipeline for RNA-seq count data that normalizes libraries on a set of
expression-stable reference genes, fits a negative-binomial GLM over a
two-factor design with interaction, tests contrasts with independent
filtering, and scores gene sets with a correlation-aware rank test.
"""

__version__ = "0.1.0"

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.design import Factor, SampleDesign
from housekeeper.pipeline import PipelineResult, run_pipeline

__all__ = [
    "CountMatrix",
    "Factor",
    "SampleDesign",
    "PipelineResult",
    "run_pipeline",
]
