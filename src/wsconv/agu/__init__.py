"""Address generation unit."""

from .address_generator import (
    AddressGenerator,
    AddressGeneratorSim,
    AguInputs,
    AguMode,
    AguOutputs,
    AguRegion,
    SlidingWindow,
)

__all__ = [
    "AddressGenerator",
    "AddressGeneratorSim",
    "AguInputs",
    "AguMode",
    "AguOutputs",
    "AguRegion",
    "SlidingWindow",
]
