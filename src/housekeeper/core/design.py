"""
Explicit factorial design for the negative-binomial GLM.

Factors and their levels are declared up front (no formula parsing). The
design matrix is built deterministically from the declaration:

    X = [Intercept | factor main effects | interaction columns]

Main-effect columns use treatment (dummy) coding against the declared
reference level of each factor. Interaction columns are element-wise
products of the main-effect indicator columns of the two interacting
factors, so with two-level factors the 2×2 layout is:

    Intercept, condition_High_vs_Low, treatment_Inhibitor_vs_Vehicle,
    conditionHigh.treatmentInhibitor

Flipping a reference level rebuilds the matrix; the fitted means are
unchanged and only the parameterization moves.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.errors import DataAlignmentError, SingularDesignError

__all__ = [
    'Factor',
    'SampleDesign',
    'DesignMatrix',
    'build_design_matrix',
]


@dataclass(frozen=True)
class Factor:
    """A categorical factor with an explicit reference level.

    Attributes:
        name: Column name in the sample table.
        levels: All levels, in the order their columns should appear.
        reference: Baseline level absorbed into the intercept.
    """

    name: str
    levels: tuple[str, ...]
    reference: str

    def __post_init__(self):
        object.__setattr__(self, 'levels', tuple(str(l) for l in self.levels))
        object.__setattr__(self, 'reference', str(self.reference))
        if len(self.levels) < 2:
            raise ValueError(f"Factor '{self.name}' needs at least 2 levels, got {self.levels}")
        if len(set(self.levels)) != len(self.levels):
            raise ValueError(f"Factor '{self.name}' has duplicated levels: {self.levels}")
        if self.reference not in self.levels:
            raise ValueError(
                f"Reference level '{self.reference}' not in levels {self.levels} "
                f"of factor '{self.name}'"
            )

    @property
    def non_reference_levels(self) -> tuple[str, ...]:
        return tuple(l for l in self.levels if l != self.reference)

    def with_reference(self, level: str) -> Factor:
        return Factor(name=self.name, levels=self.levels, reference=level)


@dataclass(frozen=True)
class SampleDesign:
    """Per-sample factor assignments plus the factor declarations.

    Attributes:
        table: DataFrame indexed by sample id, one column per factor.
        factors: Declared factors, in design-column order.
        interaction: Names of the two factors whose interaction is modeled,
            or None for a main-effects-only design.
    """

    table: pd.DataFrame
    factors: tuple[Factor, ...]
    interaction: tuple[str, str] | None = None

    def __post_init__(self):
        factors = tuple(self.factors)
        object.__setattr__(self, 'factors', factors)

        if not factors:
            raise ValueError("SampleDesign requires at least one factor")
        if self.table.index.has_duplicates:
            raise ValueError("SampleDesign table index (sample ids) must be unique")

        table = pd.DataFrame(index=self.table.index.astype(str))
        for factor in factors:
            if factor.name not in self.table.columns:
                raise ValueError(
                    f"Factor '{factor.name}' not found in design columns "
                    f"{list(self.table.columns)}"
                )
            values = self.table[factor.name].astype(str).values
            unknown = sorted(set(values) - set(factor.levels))
            if unknown:
                raise ValueError(
                    f"Factor '{factor.name}' has values {unknown} outside declared "
                    f"levels {factor.levels}"
                )
            table[factor.name] = pd.Categorical(values, categories=list(factor.levels))

        if self.interaction is not None:
            pair = tuple(self.interaction)
            names = {f.name for f in factors}
            if len(pair) != 2 or pair[0] == pair[1] or not set(pair) <= names:
                raise ValueError(
                    f"Interaction must name two distinct declared factors, got {pair}"
                )
            object.__setattr__(self, 'interaction', pair)

        object.__setattr__(self, 'table', table)

    @classmethod
    def from_table(
        cls,
        table: pd.DataFrame,
        references: dict[str, str],
        interaction: tuple[str, str] | None | bool = True,
    ) -> SampleDesign:
        """
        Declare factors from a sample table and a {factor: reference} map.

        Levels are the observed values, reference first, the rest sorted.

        Args:
            table: Sample table indexed by sample id.
            references: Mapping factor name -> reference level, in the
                order the factors should enter the design.
            interaction: True to model the interaction of the first two
                factors, a (factor, factor) pair, or False/None for none.

        Returns:
            SampleDesign
        """
        factors = []
        for name, reference in references.items():
            if name not in table.columns:
                raise ValueError(f"Factor '{name}' not found in design columns {list(table.columns)}")
            observed = sorted(set(table[name].astype(str)))
            if str(reference) not in observed:
                raise ValueError(
                    f"Reference level '{reference}' not observed in factor '{name}' ({observed})"
                )
            levels = [str(reference)] + [l for l in observed if l != str(reference)]
            factors.append(Factor(name=name, levels=tuple(levels), reference=str(reference)))

        if interaction is True:
            pair = (factors[0].name, factors[1].name) if len(factors) >= 2 else None
        elif interaction is False or interaction is None:
            pair = None
        else:
            pair = tuple(interaction)

        return cls(table=table, factors=tuple(factors), interaction=pair)

    @property
    def sample_ids(self) -> pd.Index:
        return self.table.index

    @property
    def n_samples(self) -> int:
        return len(self.table)

    def factor(self, name: str) -> Factor:
        for factor in self.factors:
            if factor.name == name:
                return factor
        raise KeyError(f"Unknown factor '{name}'; declared: {[f.name for f in self.factors]}")

    def with_reference(self, factor_name: str, level: str) -> SampleDesign:
        """Return a new design with the reference level of one factor changed."""
        self.factor(factor_name)
        factors = tuple(
            f.with_reference(level) if f.name == factor_name else f
            for f in self.factors
        )
        return SampleDesign(
            table=self.table.astype(str),
            factors=factors,
            interaction=self.interaction,
        )

    def validate_alignment(self, counts: CountMatrix) -> None:
        """
        Check that design rows match count-matrix columns exactly, in order.

        Raises:
            DataAlignmentError: On any mismatch in membership or order.
        """
        design_ids = list(self.sample_ids)
        count_ids = [str(s) for s in counts.sample_ids]
        if design_ids == count_ids:
            return

        missing = sorted(set(count_ids) - set(design_ids))
        extra = sorted(set(design_ids) - set(count_ids))
        if missing or extra:
            raise DataAlignmentError(
                f"Design and count matrix samples differ: "
                f"{len(missing)} missing from design {missing[:5]}, "
                f"{len(extra)} not in counts {extra[:5]}"
            )
        first = next(i for i, (a, b) in enumerate(zip(design_ids, count_ids)) if a != b)
        raise DataAlignmentError(
            f"Design row order does not match count matrix columns: position {first} "
            f"is '{design_ids[first]}' in the design but '{count_ids[first]}' in the counts"
        )


@dataclass(frozen=True)
class DesignMatrix:
    """Numeric design built from a SampleDesign.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank.
        col_names: Coefficient names, one per column.
        sample_ids: Sample order of the rows.
        cells: Integer cell label per sample (samples sharing a design row
            share a label). Used to detect all-zero cells per gene.
    """

    X: NDArray[np.float64]
    col_names: list[str]
    sample_ids: pd.Index
    cells: NDArray[np.int64] = field(repr=False)

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def n_cells(self) -> int:
        return int(self.cells.max()) + 1 if len(self.cells) else 0

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def column(self, name: str) -> int:
        try:
            return self.col_names.index(name)
        except ValueError:
            raise KeyError(
                f"Unknown coefficient '{name}'. Available: {self.col_names}"
            ) from None


def _main_effect_name(factor: Factor, level: str) -> str:
    return f"{factor.name}_{level}_vs_{factor.reference}"


def _interaction_name(f1: Factor, l1: str, f2: Factor, l2: str) -> str:
    return f"{f1.name}{l1}.{f2.name}{l2}"


def build_design_matrix(design: SampleDesign) -> DesignMatrix:
    """
    Build and validate the design matrix for a SampleDesign.

    Args:
        design: Declared factors and per-sample assignments.

    Returns:
        DesignMatrix with intercept, main effects and interaction columns.

    Raises:
        SingularDesignError: If the matrix is rank-deficient or leaves no
            residual degrees of freedom.
    """
    n_samples = design.n_samples
    columns: list[NDArray[np.float64]] = [np.ones(n_samples)]
    names: list[str] = ["Intercept"]
    indicators: dict[str, list[tuple[str, NDArray[np.float64]]]] = {}

    for factor in design.factors:
        values = design.table[factor.name].astype(str).values
        indicators[factor.name] = []
        for level in factor.non_reference_levels:
            col = (values == level).astype(np.float64)
            columns.append(col)
            names.append(_main_effect_name(factor, level))
            indicators[factor.name].append((level, col))

    if design.interaction is not None:
        f1 = design.factor(design.interaction[0])
        f2 = design.factor(design.interaction[1])
        for l1, c1 in indicators[f1.name]:
            for l2, c2 in indicators[f2.name]:
                columns.append(c1 * c2)
                names.append(_interaction_name(f1, l1, f2, l2))

    X = np.column_stack(columns)
    n_params = X.shape[1]

    rank = np.linalg.matrix_rank(X)
    if rank < n_params:
        raise SingularDesignError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={n_params}. "
            f"Columns: {names}. Some factor-level combination has no samples."
        )
    if n_samples - n_params < 1:
        raise SingularDesignError(
            f"Insufficient residual df: {n_samples} samples - {n_params} params = "
            f"{n_samples - n_params}."
        )

    _, cells = np.unique(X, axis=0, return_inverse=True)
    X.setflags(write=False)

    return DesignMatrix(
        X=X,
        col_names=names,
        sample_ids=design.sample_ids,
        cells=np.asarray(cells).reshape(-1).astype(np.int64),
    )
