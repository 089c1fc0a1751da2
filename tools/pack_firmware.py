#!/usr/bin/env python3
"""
Pack the built artifacts into firmware.bin.

Usage:
  pack_firmware.py [--chip CHIP] [--out DIR] [--pack PATH] [output]

Runs the pack tool once per partition, in the chip's table order:

  pack -a -p <name> -t <ceiling> -f <src> [-o <offset>] [-l <load>] <output>

The first failing call stops the run. The partially written output is left
in place so it can be inspected.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from chip_layout import ChipLayout, PartitionSpec, resolve_layout
from fw_errors import FirmwareError, MissingArtifactError, PackError, format_cause_chain
from fw_exec import CommandRunner


def pack_command(pack_tool: Path, spec: PartitionSpec, container: Path) -> list[str]:
    cmd = [
        str(pack_tool),
        "-a",
        "-p", spec.name,
        "-t", hex(spec.ceiling),
        "-f", str(spec.source),
    ]
    if spec.offset is not None:
        cmd.extend(["-o", hex(spec.offset)])
    if spec.load_address is not None:
        cmd.extend(["-l", hex(spec.load_address)])
    cmd.append(str(container))
    return cmd


def check_sources(layout: ChipLayout) -> None:
    missing = [spec for spec in layout.partitions if not spec.source.is_file()]
    if missing:
        names = ", ".join(str(spec.source) for spec in missing)
        raise MissingArtifactError(f"cannot pack firmware.bin, missing: {names}")


def compose_flat_image(
    layout: ChipLayout,
    container: Path,
    pack_tool: Path,
    runner: CommandRunner,
) -> None:
    if not pack_tool.is_file():
        raise MissingArtifactError(f"pack tool not built: {pack_tool}")
    check_sources(layout)

    # pack -a appends, so a container from an earlier run must go first.
    if container.exists():
        container.unlink()

    print(f"--- Packaging {container.name} for {layout.chip} chip ---")
    for spec in layout.partitions:
        print(f"  Adding {spec.name} to {container.name}...")
        runner.run(
            pack_command(pack_tool, spec, container),
            step=f"pack {spec.name}",
            error=PackError,
            partition=spec.name,
        )
    print(f"--- {container.name} packaging complete ({len(layout.partitions)} partitions) ---")


def main() -> int:
    parser = argparse.ArgumentParser(description="Pack artifacts into firmware.bin")
    parser.add_argument("output", nargs="?", type=Path, default=Path("firmware.bin"))
    parser.add_argument("--chip", default="sg2044", help="chip variant")
    parser.add_argument("--out", type=Path, default=Path("out"), help="artifact directory")
    parser.add_argument("--pack", type=Path, default=Path("pack/pack"), help="pack tool")
    args = parser.parse_args()

    try:
        layout = resolve_layout(args.chip, args.out.resolve())
        compose_flat_image(layout, args.output.resolve(), args.pack.resolve(), CommandRunner())
    except FirmwareError as exc:
        for line in format_cause_chain(exc):
            print(line, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
