#!/usr/bin/env python3
"""Generate PE Verilog from wsconv."""

import sys
from pathlib import Path

# Add src to path if running from scripts/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from amaranth.back import verilog  # noqa: E402

from wsconv.config import EngineConfig  # noqa: E402
from wsconv.core.pe import PE  # noqa: E402

# name -> configuration; widths are what change the PE datapath
VARIANTS = {
    "pe": EngineConfig(),
    "pe_acc24": EngineConfig(acc_bits=24),
    "pe_4bit": EngineConfig(input_bits=4, weight_bits=4, acc_bits=16),
}


def main():
    gen_dir = project_root / "gen"
    gen_dir.mkdir(exist_ok=True)

    for name, config in VARIANTS.items():
        output_path = gen_dir / f"{name}.v"
        with open(output_path, "w") as f:
            f.write(verilog.convert(PE(config), name=name.upper()))
        print(
            f"Generated {output_path} "
            f"(pixel {config.input_bits}b, weight {config.weight_bits}b, acc {config.acc_bits}b)"
        )


if __name__ == "__main__":
    main()
