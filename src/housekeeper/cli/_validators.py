"""Shared argparse type validators for CLI parameter bounds checking.

These validators produce clear error messages when users pass invalid
values (e.g., ``--alpha 2.0``, ``--n-jobs 0``). They are intended to be
used as the ``type=`` argument in ``add_argument()``.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _n_jobs(value: str) -> int:
    """argparse type for worker counts: positive, or -1 for every CPU."""
    ivalue = int(value)
    if ivalue <= 0 and ivalue != -1:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer or -1")
    return ivalue


def _probability(value: str) -> float:
    """argparse type for values in the open interval (0, 1)."""
    fvalue = float(value)
    if not (0 < fvalue < 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid probability (must be in (0, 1))"
        )
    return fvalue


def _quantile(value: str) -> float:
    """argparse type for quantiles in the half-open interval (0, 1]."""
    fvalue = float(value)
    if not (0 < fvalue <= 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid quantile (must be in (0, 1])"
        )
    return fvalue


def _correlation(value: str) -> float:
    """argparse type for correlations in the open interval (-1, 1)."""
    fvalue = float(value)
    if not (-1 < fvalue < 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid correlation (must be in (-1, 1))"
        )
    return fvalue


def _positive_float(value: str) -> float:
    """argparse type for positive floats (> 0)."""
    fvalue = float(value)
    if fvalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive float")
    return fvalue


def _non_negative_float(value: str) -> float:
    """argparse type for non-negative floats (>= 0)."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative float")
    return fvalue
