"""
Error taxonomy for the convolution engine.

None of these are recoverable at run time. They mark either a caller
contract violation (bad configuration, misbehaving stream producer) or a
hardware sizing mistake, and the engine fails loudly instead of producing
wrong tiling counts or silently wrapping accumulators.
"""


class ConvEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ConvEngineError):
    """
    N/K outside the supported range.

    Raised when a configuration is latched. The run does not start and the
    engine stays in IDLE until a fresh ``start`` with a valid configuration.
    """


class ProtocolViolation(ConvEngineError):
    """
    Integration defect on a handshake or a shared resource.

    Examples: a stream producer changing data while ``valid`` is held and
    ``ready`` has not been seen, two writes to the memory port in one tick,
    stream bytes offered to a load that already has all of its elements.
    """


class OverflowRisk(ConvEngineError):
    """Accumulator too narrow for the largest supported kernel."""
