"""Flat-table input and output for every workflow stage."""

from housekeeper.io.loaders import (
    load_count_matrix,
    load_gene_sets,
    load_reference_expression,
    load_reference_genes,
    load_sample_design,
    load_statistics,
)
from housekeeper.io.writers import (
    write_de_result,
    write_dispersions,
    write_enrichment_result,
    write_reference_genes,
    write_size_factors,
    write_table,
)

__all__ = [
    'load_count_matrix',
    'load_gene_sets',
    'load_reference_expression',
    'load_reference_genes',
    'load_sample_design',
    'load_statistics',
    'write_de_result',
    'write_dispersions',
    'write_enrichment_result',
    'write_reference_genes',
    'write_size_factors',
    'write_table',
]
