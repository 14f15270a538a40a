"""
Wsconv - A weight-stationary systolic-array convolution engine.

This package provides cycle-accurate behavioral models of the engine
(control FSM, address generation unit, PE mesh, local memory) together with
Amaranth HDL components for the datapath leaves.
"""

from .config import DEFAULT_CONFIG, SMALL_CONFIG, ConvParams, EngineConfig, TileGeometry
from .errors import ConfigurationError, ConvEngineError, OverflowRisk, ProtocolViolation

__version__ = "0.1.0"
__all__ = [
    "EngineConfig",
    "ConvParams",
    "TileGeometry",
    "DEFAULT_CONFIG",
    "SMALL_CONFIG",
    "ConvEngineError",
    "ConfigurationError",
    "ProtocolViolation",
    "OverflowRisk",
    "__version__",
]
