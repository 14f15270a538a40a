"""Controller modules for the convolution engine."""

from .control_fsm import (
    ComputePhase,
    ControlFSMSim,
    DrainPhase,
    FsmInputs,
    FsmOutputs,
    FsmRegisters,
    FsmState,
    fsm_next,
    fsm_outputs,
)

__all__ = [
    "ComputePhase",
    "ControlFSMSim",
    "DrainPhase",
    "FsmInputs",
    "FsmOutputs",
    "FsmRegisters",
    "FsmState",
    "fsm_next",
    "fsm_outputs",
]
