"""
housekeeper select-reference - stability-ranked reference genes.

Usage:
    housekeeper select-reference --expression ref.csv \
        --condition-a-cols wt_1 wt_2 --condition-b-cols ko_1 ko_2 \
        --symbol-col symbol --output reference_genes.csv
"""

import argparse
import logging
from pathlib import Path

from housekeeper.cli._validators import _non_negative_float, _quantile
from housekeeper.core.errors import HousekeeperError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the select-reference subcommand."""
    parser = subparsers.add_parser(
        "select-reference",
        help="Rank genes by expression stability and keep the most stable",
        description="Select reference genes by coefficient of variation across two reference conditions",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")
    parser.add_argument("--expression", type=Path, default=None,
                        help="Reference expression table (one row per gene)")
    parser.add_argument("--id-col", default=None,
                        help="Gene identifier column (default: first column)")
    parser.add_argument("--symbol-col", default=None,
                        help="Gene symbol column used to resolve duplicates")
    parser.add_argument("--condition-a-cols", nargs="+", default=[],
                        help="Value columns measured under the first condition")
    parser.add_argument("--condition-b-cols", nargs="+", default=[],
                        help="Value columns measured under the second condition")
    parser.add_argument("--min-expression", type=_non_negative_float, default=10.0,
                        help="Minimum summed expression across both conditions (default: 10)")
    parser.add_argument("--exclude-pattern", default=r"^ERCC-",
                        help="Regex of identifiers to drop (default: ^ERCC-)")
    parser.add_argument("--quantile", type=_quantile, default=0.02,
                        help="Retention quantile of the CV distribution (default: 0.02)")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output CSV with gene_id and cv columns")

    parser.set_defaults(func=run_select_reference)


def run_select_reference(args: argparse.Namespace) -> int:
    """Execute the select-reference command."""
    from housekeeper.cli.config import ReferenceConfig, apply_config
    from housekeeper.io import load_reference_expression, write_reference_genes

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args = apply_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Config file error: {e}")
        return 1

    if not args.expression:
        print("ERROR: --expression is required (via CLI or config file)")
        return 1
    if not args.output:
        print("ERROR: --output is required (via CLI or config file)")
        return 1

    try:
        expression = load_reference_expression(args.expression, id_col=args.id_col)
        selector = ReferenceConfig(
            min_expression=args.min_expression,
            exclude_pattern=args.exclude_pattern or None,
            quantile=args.quantile,
        ).build()
        refset = selector.select(
            expression,
            condition_a=args.condition_a_cols,
            condition_b=args.condition_b_cols,
            id_col=args.id_col,
            symbol_col=args.symbol_col,
        )
    except (HousekeeperError, FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    write_reference_genes(refset, args.output)
    print(f"Selected {refset.n_retained}/{refset.n_considered} reference genes "
          f"(CV <= {refset.cutoff:.3f}%) -> {args.output}")
    return 0
