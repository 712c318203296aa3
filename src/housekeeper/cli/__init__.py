"""
housekeeper CLI - reference-normalized RNA-seq differential expression.

Commands:
    housekeeper select-reference  - Rank genes by stability in a reference dataset
    housekeeper run               - Size factors, NB GLM fit, contrast test (+ enrichment)
    housekeeper enrich            - Rank enrichment of gene sets on a result column
"""

import argparse
import sys
from typing import Optional, List


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for housekeeper."""
    parser = argparse.ArgumentParser(
        prog="housekeeper",
        description="Reference-gene-normalized differential expression for RNA-seq counts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  select-reference  Rank genes by expression stability and keep the most stable
  run               Normalize, fit the NB GLM and test a contrast
  enrich            Correlation-aware rank enrichment of gene sets

Examples:
  housekeeper select-reference --expression ref.csv --condition-a-cols wt1 wt2 \\
      --condition-b-cols ko1 ko2 --output reference_genes.csv
  housekeeper run --counts counts.csv --design design.csv \\
      --reference-genes reference_genes.csv --factor condition:Low \\
      --factor treatment:Vehicle --coefficient conditionHigh.treatmentInhibitor \\
      --output results/
  housekeeper enrich --results results/de_results.csv --gene-sets sets.gmt \\
      --output results/enrichment.csv
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from housekeeper.cli import enrich, reference, run
    reference.register_parser(subparsers)
    run.register_parser(subparsers)
    enrich.register_parser(subparsers)

    argv = list(sys.argv[1:] if args is None else args)
    parsed_args = parser.parse_args(argv)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # raw arguments let config merging tell explicit values from defaults
    parsed_args.argv = argv[1:]
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
