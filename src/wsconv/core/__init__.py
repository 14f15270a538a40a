"""
Core convolution array components.

This module contains the fundamental building blocks:
- PE: Processing Element (weight-stationary MAC pipeline)
- SystolicArray: A x A mesh of PEs
- PESim / SystolicArraySim: behavioral models
"""

from .pe import PE, PEInputs, PEOutputs, PESim, PEState, pe_step
from .systolic_array import ArrayInputs, ArrayOutputs, SystolicArray, SystolicArraySim

__all__ = [
    "PE",
    "PEState",
    "PEInputs",
    "PEOutputs",
    "PESim",
    "pe_step",
    "SystolicArray",
    "SystolicArraySim",
    "ArrayInputs",
    "ArrayOutputs",
]
