"""
Processing Element (PE) - The fundamental compute unit of the systolic array.

Each PE is a weight-stationary MAC pipeline:

    product      = pixel_in * weight               (combinational)
    product_pipe <- product                        (registered)
    psum_pipe    <- psum_in                        (registered)
    base         = load_psum ? psum_mem : psum_pipe
    psum_out     = base + product_pipe             (combinational)
    accumulator  <- psum_out
    pixel_out    <- pixel_in                       (registered)

Data flows:
- pixels: horizontally (left to right), one register per PE
- partial sums: vertically (top to bottom), one register per PE
- weight: loaded once per kernel tile, then stationary

Control priority: clear > load_weight > compute. A disabled PE holds.
"""

from dataclasses import dataclass, field, replace

from amaranth import Module, Mux, Signal, unsigned
from amaranth.lib.wiring import Component, In, Out

from ..config import EngineConfig


@dataclass(frozen=True)
class PEState:
    """Registers of one PE."""

    weight: int = 0
    product_pipe: int = 0
    psum_pipe: int = 0
    accumulator: int = 0
    pixel_out: int = 0


@dataclass(frozen=True)
class PEInputs:
    pixel_in: int = 0
    psum_in: int = 0
    weight_in: int = 0
    load_weight: bool = False
    load_psum: bool = False
    psum_mem: int = 0
    clear: bool = False


@dataclass(frozen=True)
class PEOutputs:
    pixel_out: int = 0
    psum_out: int = 0
    accumulator: int = 0
    weight: int = 0


def pe_outputs(state: PEState, inputs: PEInputs, config: EngineConfig) -> PEOutputs:
    """Port values for a register state with ``inputs`` applied."""
    base = inputs.psum_mem if inputs.load_psum else state.psum_pipe
    return PEOutputs(
        pixel_out=state.pixel_out,
        psum_out=(base + state.product_pipe) & config.acc_mask,
        accumulator=state.accumulator,
        weight=state.weight,
    )


def pe_step(
    state: PEState, inputs: PEInputs, enabled: bool, config: EngineConfig
) -> tuple[PEState, PEOutputs]:
    """
    One clock edge of a PE.

    Returns the next register state and the port values after the edge,
    evaluated with the same inputs still applied.
    """
    if inputs.clear:
        nxt = PEState(weight=state.weight)
    elif not enabled:
        nxt = state
    elif inputs.load_weight:
        nxt = replace(state, weight=inputs.weight_in & ((1 << config.weight_bits) - 1))
    else:
        product_mask = (1 << config.product_bits) - 1
        nxt = PEState(
            weight=state.weight,
            product_pipe=(inputs.pixel_in * state.weight) & product_mask,
            psum_pipe=inputs.psum_in & config.acc_mask,
            accumulator=pe_outputs(state, inputs, config).psum_out,
            pixel_out=inputs.pixel_in & ((1 << config.input_bits) - 1),
        )
    return nxt, pe_outputs(nxt, inputs, config)


@dataclass
class PESim:
    """Behavioral model of a single PE."""

    config: EngineConfig = field(default_factory=EngineConfig)
    state: PEState = field(default_factory=PEState)
    cycle: int = 0

    def step(self, inputs: PEInputs, enabled: bool = True) -> PEOutputs:
        self.state, outputs = pe_step(self.state, inputs, enabled, self.config)
        self.cycle += 1
        return outputs

    def reset(self):
        self.state = PEState()
        self.cycle = 0


class PE(Component):
    """
    Processing Element - weight-stationary MAC stage of the systolic array.

    Ports:
        pixel_in: Input pixel (from the PE on the left)
        psum_in: Partial sum (from the PE above)
        weight_in: Weight value for load_weight
        load_weight: Load weight_in into the weight register
        load_psum: Select psum_mem instead of psum_pipe as accumulation base
        psum_mem: Partial sum restored from memory
        enable: Advance the pipeline
        clear: Zero pipes, accumulator and pixel register (weight kept)

        pixel_out: Registered pixel (to the PE on the right)
        psum_out: base + product_pipe (to the PE below)
        accumulator: Accumulator register
        weight: Stationary weight register

    Parameters:
        config: EngineConfig with bit widths
    """

    def __init__(self, config: EngineConfig):
        self.config = config

        super().__init__(
            {
                # Inputs
                "pixel_in": In(unsigned(config.input_bits)),
                "psum_in": In(unsigned(config.acc_bits)),
                "weight_in": In(unsigned(config.weight_bits)),
                "load_weight": In(1),
                "load_psum": In(1),
                "psum_mem": In(unsigned(config.acc_bits)),
                "enable": In(1),
                "clear": In(1),
                # Outputs
                "pixel_out": Out(unsigned(config.input_bits)),
                "psum_out": Out(unsigned(config.acc_bits)),
                "accumulator": Out(unsigned(config.acc_bits)),
                "weight": Out(unsigned(config.weight_bits)),
            }
        )

    def elaborate(self, _platform):
        m = Module()
        cfg = self.config

        weight = Signal(cfg.weight_bits, name="weight_r")
        product_pipe = Signal(cfg.product_bits)
        psum_pipe = Signal(cfg.acc_bits)
        acc = Signal(cfg.acc_bits, name="acc")
        pixel = Signal(cfg.input_bits, name="pixel_r")

        # =================================================================
        # Multiply-Accumulate Computation
        # =================================================================

        product = Signal(cfg.product_bits)
        m.d.comb += product.eq(self.pixel_in * weight)

        base = Signal(cfg.acc_bits)
        m.d.comb += base.eq(Mux(self.load_psum, self.psum_mem, psum_pipe))

        accumulated = Signal(cfg.acc_bits)
        m.d.comb += accumulated.eq(base + product_pipe)

        m.d.comb += [
            self.psum_out.eq(accumulated),
            self.pixel_out.eq(pixel),
            self.accumulator.eq(acc),
            self.weight.eq(weight),
        ]

        # =================================================================
        # Register Update Logic
        # =================================================================

        with m.If(self.clear):
            m.d.sync += [
                product_pipe.eq(0),
                psum_pipe.eq(0),
                acc.eq(0),
                pixel.eq(0),
            ]
        with m.Elif(self.enable):
            with m.If(self.load_weight):
                m.d.sync += weight.eq(self.weight_in)
            with m.Else():
                m.d.sync += [
                    product_pipe.eq(product),
                    psum_pipe.eq(self.psum_in),
                    acc.eq(accumulated),
                    pixel.eq(self.pixel_in),
                ]

        return m
