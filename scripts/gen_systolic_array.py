#!/usr/bin/env python3
"""Generate SystolicArray Verilog from wsconv."""

import sys
from pathlib import Path

# Add src to path if running from scripts/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from amaranth.back import verilog  # noqa: E402

from wsconv.config import EngineConfig  # noqa: E402
from wsconv.core.systolic_array import SystolicArray  # noqa: E402


def main():
    gen_dir = project_root / "gen"
    gen_dir.mkdir(exist_ok=True)

    # 2x2 mesh for waveform inspection
    config_2x2 = EngineConfig(array_size=2, max_kernel_dim=4)
    output_path = gen_dir / "systolic_array_2x2.v"
    with open(output_path, "w") as f:
        f.write(verilog.convert(SystolicArray(config_2x2), name="SystolicArray_2x2"))

    print(f"Generated {output_path}")

    # Full-size 8x8 mesh
    config = EngineConfig()
    output_path = gen_dir / "systolic_array.v"
    with open(output_path, "w") as f:
        f.write(verilog.convert(SystolicArray(config), name="SystolicArray"))

    print(f"Generated {output_path}")


if __name__ == "__main__":
    main()
