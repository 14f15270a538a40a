#!/usr/bin/env python3
"""
Weight-Stationary Convolution Engine Demo.

This example streams a random image and kernel through the cycle-accurate
engine model and checks the result against numpy.

The engine:
1. Loads the K x K kernel into the weight region
2. Loads each halo'd input tile into a ping-pong bank
3. Walks kernel tiles over the systolic array (weight-stationary)
4. Writes the output tile back and streams it out

Usage:
    python 01_conv_engine.py [options]

Examples:
    # 16x16 image, 3x3 kernel
    python 01_conv_engine.py --n 16 --k 3

    # Kernel larger than the array (kernel tiling) with host backpressure
    python 01_conv_engine.py --n 32 --k 12 --backpressure 0.5

    # Show every state transition
    python 01_conv_engine.py --trace
"""

import argparse
import logging
import random
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

import numpy as np

from wsconv.config import DEFAULT_CONFIG, SMALL_CONFIG, TileGeometry
from wsconv.errors import ConvEngineError
from wsconv.host import conv2d_reference, run_convolution


def run_demo(n: int, k: int, small: bool, backpressure: float, seed: int) -> bool:
    config = SMALL_CONFIG if small else DEFAULT_CONFIG

    print("=" * 70)
    print("Weight-Stationary Convolution Engine Demo")
    print("=" * 70)

    # -------------------------------------------------------------------------
    # 1. Problem Setup
    # -------------------------------------------------------------------------
    print("\n1. Problem Setup")
    print("-" * 40)
    geo = TileGeometry(n=n, k=k, array_size=config.array_size)
    print(f"   Image:  {n}x{n} uint8")
    print(f"   Kernel: {k}x{k} uint8")
    print(f"   Output: {geo.output_dim}x{geo.output_dim} uint32")
    print(f"\n   Array: {config.array_size}x{config.array_size}")
    print(f"   Output tiles: {geo.num_output_tiles}, kernel tiles: {geo.num_kernel_tiles}")
    print(f"   Input tile:   {geo.input_tile_size}x{geo.input_tile_size}")

    # -------------------------------------------------------------------------
    # 2. Memory Layout
    # -------------------------------------------------------------------------
    print("\n2. Memory Layout")
    print("-" * 40)
    for name, (base, words) in config.layout.regions().items():
        print(f"   {name:<14} 0x{base:04X} ({words} words)")

    # -------------------------------------------------------------------------
    # 3. Simulation
    # -------------------------------------------------------------------------
    print("\n3. Running Simulation")
    print("-" * 40)
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, (n, n), dtype=np.uint8)
    kernel = rng.integers(0, 256, (k, k), dtype=np.uint8)

    pattern = None
    if backpressure > 0:
        stall = random.Random(seed)

        def pattern(_cycle):
            return stall.random() >= backpressure

    try:
        run = run_convolution(
            image, kernel, config=config, rx_valid_pattern=pattern, tx_ready_pattern=pattern
        )
    except ConvEngineError as e:
        print(f"   ERROR: {e}")
        return False

    if not run.completed:
        print(f"   WARNING: Hit cycle limit ({run.cycles})")
        return False

    print(f"   Completed in {run.cycles} cycles")
    print(f"   States: {' -> '.join(s.name for s in run.state_trace[:6])} ...")
    for key in ("array_mac_cycles", "array_passes", "memory_total_reads", "memory_total_writes"):
        print(f"   {key}: {run.statistics[key]}")

    # -------------------------------------------------------------------------
    # 4. Verification
    # -------------------------------------------------------------------------
    print("\n4. Verification")
    print("-" * 40)
    expected = conv2d_reference(image, kernel)
    ok = bool(np.array_equal(run.output, expected))
    print(f"   Outputs: {run.output_count} (expected {geo.total_outputs})")
    print(f"   Result matches numpy: {'OK' if ok else 'MISMATCH'}")
    if not ok:
        bad = np.argwhere(run.output != expected)
        i, j = bad[0]
        print(f"   First mismatch at ({i}, {j}): {run.output[i, j]} != {expected[i, j]}")

    print("\n" + "=" * 70)
    print("Demo completed successfully!" if ok else "Demo completed with mismatches.")
    print("=" * 70)
    return ok


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Weight-Stationary Convolution Engine Demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--n", type=int, default=16, help="Image dimension (default: 16)")
    parser.add_argument("--k", type=int, default=3, help="Kernel dimension (default: 3)")
    parser.add_argument(
        "--small",
        action="store_true",
        help="Use the 4x4 array configuration",
    )
    parser.add_argument(
        "--backpressure",
        type=float,
        default=0.0,
        help="Probability that the host stalls a stream each cycle (default: 0)",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Log every FSM state transition",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.trace else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    ok = run_demo(args.n, args.k, args.small, args.backpressure, args.seed)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
