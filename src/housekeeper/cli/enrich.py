"""
housekeeper enrich - rank enrichment of gene sets on a result column.

Usage:
    housekeeper enrich --results results/de_results.csv --gene-sets sets.gmt \
        --output results/enrichment.csv
"""

import argparse
import logging
from pathlib import Path

from housekeeper.cli._validators import _correlation, _positive_int
from housekeeper.core.errors import HousekeeperError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the enrich subcommand."""
    parser = subparsers.add_parser(
        "enrich",
        help="Correlation-aware rank enrichment of gene sets",
        description="Competitive gene-set test on a per-gene statistic (cameraPR-style)",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")
    parser.add_argument("--results", type=Path, default=None,
                        help="Result table indexed by gene id (e.g. de_results.csv)")
    parser.add_argument("--gene-sets", type=Path, default=None,
                        help="GMT file or table with gene_set and gene_id columns")
    parser.add_argument("--stat-col", default="stat",
                        help="Column holding the per-gene statistic (default: stat)")
    parser.add_argument("--expression", type=Path, default=None,
                        help="Optional genes x samples table to estimate each set's inter-gene correlation")
    parser.add_argument("--no-ranks", dest="use_ranks", action="store_false",
                        help="Two-sample t on statistic values instead of the rank-sum test")
    parser.add_argument("--inter-gene-cor", type=_correlation, default=0.01,
                        help="Fixed inter-gene correlation (default: 0.01)")
    parser.add_argument("--allow-neg-cor", action="store_true",
                        help="Keep negative correlations estimated from --expression")
    parser.add_argument("--min-set-size", type=_positive_int, default=2,
                        help="Minimum matched genes per set (default: 2)")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output CSV")

    parser.set_defaults(func=run_enrich)


def run_enrich(args: argparse.Namespace) -> int:
    """Execute the enrich command."""
    from housekeeper.cli.config import EnrichmentConfig, apply_config
    from housekeeper.io import load_gene_sets, load_reference_expression, load_statistics, write_enrichment_result

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args = apply_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Config file error: {e}")
        return 1

    for name in ("results", "gene_sets", "output"):
        if not getattr(args, name):
            print(f"ERROR: --{name.replace('_', '-')} is required (via CLI or config file)")
            return 1

    try:
        statistics = load_statistics(args.results, stat_col=args.stat_col)
        gene_sets = load_gene_sets(args.gene_sets)
        expression = load_reference_expression(args.expression) if args.expression else None
        tester = EnrichmentConfig(
            use_ranks=args.use_ranks,
            inter_gene_correlation=args.inter_gene_cor,
            min_size=args.min_set_size,
            allow_neg_cor=args.allow_neg_cor,
            stat_col=args.stat_col,
        ).build()
        result = tester.test(statistics, gene_sets, expression=expression)
    except (HousekeeperError, FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    write_enrichment_result(result, args.output)
    n_sig = int((result.table['fdr'] < 0.05).sum())
    print(f"Tested {len(result)} gene sets ({len(result.skipped)} skipped), "
          f"{n_sig} with FDR < 0.05 -> {args.output}")
    return 0
