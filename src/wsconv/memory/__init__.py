"""
Local memory for the convolution engine.

- MemoryPort: Amaranth single-read/single-write word memory
- MemoryPortSim: behavioral model with protocol checking
"""

from .memory_port import MemoryPort, MemoryPortSim

__all__ = ["MemoryPort", "MemoryPortSim"]
