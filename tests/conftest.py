"""
Pytest configuration and shared fixtures.

Provides a seeded negative-binomial count simulator for the 2×2
condition × treatment layout used throughout the test suite.
"""

import numpy as np
import pandas as pd
import pytest

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.design import SampleDesign
from housekeeper.stats.reference_genes import ReferenceGeneSet

INTERACTION = "conditionHigh.treatmentInhibitor"


def simulate_experiment(
    n_genes: int = 100,
    n_per_cell: int = 4,
    n_de: int = 5,
    log2_fc: float = 2.0,
    seed: int = 42,
):
    """
    Simulate NB counts for a 2×2 design with an interaction effect.

    Args:
        n_genes: Total genes (the first ``n_de`` are differential).
        n_per_cell: Replicates per condition × treatment cell.
        n_de: Genes with a log2 fold change in the High:Inhibitor cell only.
        log2_fc: Interaction effect size.
        seed: Random seed for reproducibility.

    Returns:
        (CountMatrix, SampleDesign, truth) where truth holds the true base
        means, dispersions, size factors and DE gene ids.

    Design:
        - Base means uniform on [100, 1000]
        - Dispersions uniform on [0.05, 0.1]
        - Size factors uniform on [0.7, 1.4], rescaled to geometric mean 1
    """
    rng = np.random.default_rng(seed)

    cells = [("Low", "Vehicle"), ("Low", "Inhibitor"), ("High", "Vehicle"), ("High", "Inhibitor")]
    sample_ids, conditions, treatments = [], [], []
    for condition, treatment in cells:
        for rep in range(n_per_cell):
            sample_ids.append(f"{condition}_{treatment}_{rep + 1}")
            conditions.append(condition)
            treatments.append(treatment)
    n_samples = len(sample_ids)

    gene_ids = [f"DE_{i}" for i in range(n_de)] + [f"gene_{i}" for i in range(n_de, n_genes)]
    base = rng.uniform(100, 1000, size=n_genes)
    disp = rng.uniform(0.05, 0.1, size=n_genes)
    sf = rng.uniform(0.7, 1.4, size=n_samples)
    sf = sf / np.exp(np.mean(np.log(sf)))

    effect = np.zeros((n_genes, n_samples))
    in_cell = (np.array(conditions) == "High") & (np.array(treatments) == "Inhibitor")
    effect[:n_de, in_cell] = log2_fc

    mu = base[:, None] * sf[None, :] * 2.0 ** effect
    size = 1.0 / disp[:, None]
    counts = rng.negative_binomial(size, size / (size + mu))

    matrix = CountMatrix(
        counts=counts,
        gene_ids=pd.Index(gene_ids),
        sample_ids=pd.Index(sample_ids),
    )
    table = pd.DataFrame({"condition": conditions, "treatment": treatments}, index=sample_ids)
    design = SampleDesign.from_table(table, references={"condition": "Low", "treatment": "Vehicle"})

    truth = {
        "base_mean": base,
        "dispersion": disp,
        "size_factors": sf,
        "de_genes": gene_ids[:n_de],
        "null_genes": gene_ids[n_de:],
    }
    return matrix, design, truth


def reference_set_for(gene_ids) -> ReferenceGeneSet:
    """ReferenceGeneSet over the given ids with placeholder CVs."""
    gene_ids = tuple(str(g) for g in gene_ids)
    return ReferenceGeneSet(
        gene_ids=gene_ids,
        cv=tuple(float(i) for i in range(len(gene_ids))),
        quantile=1.0,
        cutoff=float(len(gene_ids) - 1),
        n_considered=len(gene_ids),
    )


@pytest.fixture(scope="session")
def experiment():
    """Default simulated experiment (100 genes, 5 DE, 4 replicates per cell)."""
    return simulate_experiment()


@pytest.fixture(scope="session")
def reference_genes(experiment):
    """Null genes of the default experiment as the reference set."""
    _, _, truth = experiment
    return reference_set_for(truth["null_genes"])


@pytest.fixture(scope="session")
def fitted(experiment, reference_genes):
    """Size factors and GLM fit of the default experiment."""
    from housekeeper.stats.glm import NegativeBinomialModelFitter
    from housekeeper.stats.size_factors import SizeFactorEstimator

    counts, design, _ = experiment
    size_factors = SizeFactorEstimator().estimate(counts, reference_genes.as_mask(counts.gene_ids))
    fitset = NegativeBinomialModelFitter().fit(counts, design, size_factors)
    return size_factors, fitset


@pytest.fixture
def rng():
    return np.random.default_rng(42)
