"""
Core data structures for the differential-expression engine.

1. CountMatrix: immutable genes × samples read counts
2. Factor / SampleDesign: explicit factor declarations per sample
3. DesignMatrix: deterministic numeric design (intercept, main effects,
   interaction) validated for rank
4. Error taxonomy shared by every stage
"""

from housekeeper.core.countmatrix import CountMatrix
from housekeeper.core.design import (
    DesignMatrix,
    Factor,
    SampleDesign,
    build_design_matrix,
)
from housekeeper.core.errors import (
    ConvergenceFailure,
    DataAlignmentError,
    DegenerateReferenceSetError,
    FilterThresholdAmbiguity,
    HousekeeperError,
    SingularDesignError,
)

__all__ = [
    'CountMatrix',
    'DesignMatrix',
    'Factor',
    'SampleDesign',
    'build_design_matrix',
    'ConvergenceFailure',
    'DataAlignmentError',
    'DegenerateReferenceSetError',
    'FilterThresholdAmbiguity',
    'HousekeeperError',
    'SingularDesignError',
]
