"""
housekeeper run - reference-normalized NB GLM differential expression.

Usage:
    housekeeper run --counts counts.csv --design design.csv \
        --reference-genes reference_genes.csv \
        --factor condition:Low --factor treatment:Vehicle \
        --coefficient conditionHigh.treatmentInhibitor --output results/

Writes into the output directory:
    de_results.csv               one row per gene
    de_results.filter_curve.csv  independent-filtering rejection curve
    size_factors.csv
    dispersions.csv
    enrichment.csv               when --gene-sets is given
"""

import argparse
import logging
from pathlib import Path

from housekeeper.cli._validators import (
    _correlation,
    _n_jobs,
    _non_negative_float,
    _positive_float,
    _positive_int,
    _probability,
    _quantile,
)
from housekeeper.core.errors import HousekeeperError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the run subcommand."""
    parser = subparsers.add_parser(
        "run",
        help="Normalize, fit the NB GLM and test a contrast",
        description="Reference-gene size factors, negative-binomial GLM with shrunk "
                    "dispersions, Wald contrast with independent filtering",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    io_group = parser.add_argument_group("inputs and outputs")
    io_group.add_argument("--counts", type=Path, default=None,
                          help="Count table (genes x samples, first column = gene id)")
    io_group.add_argument("--design", type=Path, default=None,
                          help="Sample table (first column = sample id, one column per factor)")
    io_group.add_argument("--reference-genes", type=Path, default=None,
                          help="Reference gene table from select-reference")
    io_group.add_argument("--gene-sets", type=Path, default=None,
                          help="Optional GMT or gene_set/gene_id table for enrichment")
    io_group.add_argument("--output", "-o", type=Path, default=None,
                          help="Output directory")

    design_group = parser.add_argument_group("design")
    design_group.add_argument("--factor", action="append", default=None, metavar="NAME:REF",
                              help="Factor and its reference level, in design order (repeatable)")
    design_group.add_argument("--no-interaction", dest="interaction", action="store_false",
                              help="Main effects only (default: interaction of the first two factors)")
    design_group.add_argument("--coefficient", default=None,
                              help="Design coefficient to test, e.g. conditionHigh.treatmentInhibitor")
    design_group.add_argument("--contrast", default=None, metavar="COEF=W,...",
                              help="Weighted combination of coefficients, e.g. "
                                   "treatment_Inhibitor_vs_Vehicle=1,conditionHigh.treatmentInhibitor=1")
    design_group.add_argument("--contrast-name", default=None,
                              help="Label for the tested contrast (default: derived from the coefficients)")

    fit_group = parser.add_argument_group("fitting")
    fit_group.add_argument("--min-total", type=int, default=3,
                           help="Minimum row total for a reference gene (default: 3)")
    fit_group.add_argument("--min-reference-genes", type=_positive_int, default=10,
                           help="Minimum eligible reference genes (default: 10)")
    fit_group.add_argument("--max-iter", type=_positive_int, default=50,
                           help="IRLS iteration cap (default: 50)")
    fit_group.add_argument("--tol", type=_positive_float, default=1e-6,
                           help="IRLS relative convergence tolerance (default: 1e-6)")
    fit_group.add_argument("--ridge", type=_non_negative_float, default=1e-3,
                           help="Ridge penalty for genes with an all-zero design cell (default: 1e-3)")
    fit_group.add_argument("--min-mu", type=_positive_float, default=0.5,
                           help="Floor on fitted means during IRLS (default: 0.5)")
    fit_group.add_argument("--min-disp", type=_positive_float, default=1e-8,
                           help="Lower bound of the dispersion search (default: 1e-8)")
    fit_group.add_argument("--max-disp", type=_positive_float, default=None,
                           help="Upper bound of the dispersion search (default: max(10, n_samples))")
    fit_group.add_argument("--outlier-sd", type=_positive_float, default=2.0,
                           help="Residual SDs above the trend that keep a raw dispersion (default: 2)")
    fit_group.add_argument("--trend-kind", choices=["parametric", "mean"], default="parametric",
                           help="Dispersion trend (default: parametric)")
    fit_group.add_argument("--n-jobs", type=_n_jobs, default=1,
                           help="Worker threads, -1 for all CPUs (default: 1)")

    test_group = parser.add_argument_group("testing")
    test_group.add_argument("--alpha", type=_probability, default=0.05,
                            help="Target FDR (default: 0.05)")
    test_group.add_argument("--no-filtering", dest="independent_filtering", action="store_false",
                            help="Disable independent filtering by base mean")
    test_group.add_argument("--n-quantiles", type=_positive_int, default=50,
                            help="Candidate base-mean cutoffs for independent filtering (default: 50)")
    test_group.add_argument("--upper-quantile", type=_quantile, default=0.95,
                            help="Largest candidate cutoff quantile (default: 0.95)")
    test_group.add_argument("--no-ranks", dest="use_ranks", action="store_false",
                            help="Enrichment on statistic values instead of ranks")
    test_group.add_argument("--inter-gene-cor", type=_correlation, default=0.01,
                            help="Inter-gene correlation for enrichment (default: 0.01)")
    test_group.add_argument("--allow-neg-cor", action="store_true",
                            help="Keep negative estimated inter-gene correlations")
    test_group.add_argument("--min-set-size", type=_positive_int, default=2,
                            help="Minimum matched genes per gene set (default: 2)")

    parser.set_defaults(func=run_de)


def parse_factors(specs: list[str]) -> dict[str, str]:
    """Parse ``NAME:REF`` entries into an ordered {factor: reference} map."""
    factors: dict[str, str] = {}
    for spec in specs:
        name, sep, ref = spec.partition(":")
        if not sep or not name or not ref:
            raise ValueError(f"Invalid --factor '{spec}'. Expected NAME:REF")
        if name in factors:
            raise ValueError(f"Factor '{name}' given twice")
        factors[name] = ref
    return factors


def parse_weights(spec: str) -> dict[str, float]:
    """Parse ``COEF=W,COEF=W`` into a weight map."""
    weights: dict[str, float] = {}
    for part in spec.split(","):
        name, sep, value = part.strip().partition("=")
        if not sep or not name:
            raise ValueError(f"Invalid --contrast term '{part}'. Expected COEF=WEIGHT")
        weights[name] = float(value)
    return weights


def run_de(args: argparse.Namespace) -> int:
    """Execute the run command."""
    from housekeeper.cli.config import ContrastConfig, EnrichmentConfig, FitConfig, apply_config
    from housekeeper.io import (
        load_count_matrix,
        load_gene_sets,
        load_reference_genes,
        load_sample_design,
        write_de_result,
        write_dispersions,
        write_enrichment_result,
        write_size_factors,
    )
    from housekeeper.pipeline import resolve_contrast, run_pipeline, summarize

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args = apply_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Config file error: {e}")
        return 1

    for name in ("counts", "design", "reference_genes", "output"):
        if not getattr(args, name):
            print(f"ERROR: --{name.replace('_', '-')} is required (via CLI or config file)")
            return 1
    if not args.factor:
        print("ERROR: at least one --factor NAME:REF is required (via CLI or config file)")
        return 1
    if (args.coefficient is None) == (args.contrast is None):
        print("ERROR: give exactly one of --coefficient or --contrast")
        return 1

    try:
        factors = parse_factors(args.factor)
        counts = load_count_matrix(args.counts)
        design = load_sample_design(args.design, references=factors, interaction=args.interaction)
        reference_genes = load_reference_genes(args.reference_genes)
        gene_sets = load_gene_sets(args.gene_sets) if args.gene_sets else None

        if args.coefficient is not None:
            contrast = resolve_contrast(design, coefficient=args.coefficient, name=args.contrast_name)
        else:
            contrast = resolve_contrast(design, weights=parse_weights(args.contrast), name=args.contrast_name)

        fit_config = FitConfig(
            min_total=args.min_total,
            min_reference_genes=args.min_reference_genes,
            max_iter=args.max_iter,
            tol=args.tol,
            ridge=args.ridge,
            min_mu=args.min_mu,
            min_disp=args.min_disp,
            max_disp=args.max_disp,
            outlier_sd=args.outlier_sd,
            trend_kind=args.trend_kind,
            n_jobs=args.n_jobs,
        )
        contrast_config = ContrastConfig(
            alpha=args.alpha,
            independent_filtering=args.independent_filtering,
            n_quantiles=args.n_quantiles,
            upper_quantile=args.upper_quantile,
        )
        enrichment_config = EnrichmentConfig(
            use_ranks=args.use_ranks,
            inter_gene_correlation=args.inter_gene_cor,
            min_size=args.min_set_size,
            allow_neg_cor=args.allow_neg_cor,
        )

        result = run_pipeline(
            counts,
            design,
            reference_genes,
            contrast=contrast,
            gene_sets=gene_sets,
            estimator=fit_config.build_estimator(),
            fitter=fit_config.build(),
            engine=contrast_config.build(),
            tester=enrichment_config.build(),
        )
    except (HousekeeperError, FileNotFoundError, ValueError, KeyError) as e:
        print(f"ERROR: {e}")
        return 1

    output: Path = args.output
    output.mkdir(parents=True, exist_ok=True)
    write_de_result(result.de, output / "de_results.csv")
    write_size_factors(result.size_factors, output / "size_factors.csv")
    write_dispersions(result.fit, output / "dispersions.csv")
    if result.enrichment is not None:
        write_enrichment_result(result.enrichment, output / "enrichment.csv")

    summary = summarize(result)
    print(f"\n{'='*70}")
    print(f"  Contrast: {result.de.contrast.name}")
    print(f"{'='*70}")
    for key, value in summary.items():
        print(f"  {key:<20} {value}")
    print(f"\nResults written to {output}")
    return 0
