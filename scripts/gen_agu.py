#!/usr/bin/env python3
"""Generate AddressGenerator Verilog from wsconv."""

import sys
from pathlib import Path

# Add src to path if running from scripts/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from amaranth.back import verilog  # noqa: E402

from wsconv.agu.address_generator import AddressGenerator  # noqa: E402
from wsconv.config import EngineConfig  # noqa: E402


def main():
    gen_dir = project_root / "gen"
    gen_dir.mkdir(exist_ok=True)

    config = EngineConfig()
    agu = AddressGenerator(config)

    output_path = gen_dir / "address_generator.v"
    with open(output_path, "w") as f:
        f.write(verilog.convert(agu, name="AddressGenerator"))

    print(f"Generated {output_path}")


if __name__ == "__main__":
    main()
