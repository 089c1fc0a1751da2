#!/usr/bin/env python3
"""
Per-chip firmware.bin layouts.

Usage:
  chip_layout.py [--chip CHIP] [--out DIR]

Prints the partition table that would be packed for CHIP, using the
artifacts found in DIR, and checks it for clashing names or offsets.

Each chip variant lists its fixed partitions in pack order. Device-tree blobs
found next to the other artifacts are appended after them, all at the
variant's device-tree load address.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

from fw_errors import LayoutError, UnsupportedChipError

KERNEL_IMAGE = "riscv64_Image"
INITRD = "initrd.img"
SBI_FIRMWARE = "fw_dynamic.bin"
ZSBL = "zsbl.bin"
FIP = "fip.bin"
FSBL = "fsbl.bin"

# Staged next to the common artifacts in firmware.img.
STAGING_COMMON_DIR = "riscv64"


@dataclass(frozen=True)
class PartitionSpec:
    name: str
    source: Path
    ceiling: int
    offset: int | None = None
    load_address: int | None = None


@dataclass(frozen=True)
class ChipVariant:
    chip: str
    ceiling: int
    # (name, offset, load address) in pack order
    partitions: tuple[tuple[str, int | None, int | None], ...]
    dtb_load_address: int
    dtb_patterns: tuple[str, ...]
    # Blobs shipped prebuilt under firmware/<chip>/
    first_stage: tuple[str, ...]
    # name -> sub-path inside FIRM_OUT for the chip-specific blobs
    staging_extras: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class ChipLayout:
    chip: str
    partitions: tuple[PartitionSpec, ...]

    @property
    def names(self) -> list[str]:
        return [spec.name for spec in self.partitions]


CHIPS: dict[str, ChipVariant] = {
    "sg2042": ChipVariant(
        chip="sg2042",
        ceiling=0x600000,
        partitions=(
            (FIP, 0x30000, None),
            (ZSBL, None, 0x40000000),
            (SBI_FIRMWARE, None, 0x0),
            (KERNEL_IMAGE, None, 0x2000000),
            (INITRD, None, 0x30000000),
        ),
        dtb_load_address=0x20000000,
        dtb_patterns=("mango-*.dtb", "sg2042-*.dtb"),
        first_stage=(FIP,),
        staging_extras=((FIP, FIP), (ZSBL, ZSBL)),
    ),
    "sg2044": ChipVariant(
        chip="sg2044",
        ceiling=0x80000,
        partitions=(
            (KERNEL_IMAGE, 0x600000, 0x80200000),
            (INITRD, None, 0x8B000000),
            (FSBL, None, 0x7010080000),
            (ZSBL, None, 0x40000000),
            (SBI_FIRMWARE, None, 0x80000000),
        ),
        dtb_load_address=0x88000000,
        dtb_patterns=("mango-*.dtb", "sg2044-*.dtb"),
        first_stage=(FSBL,),
        staging_extras=(
            (FSBL, f"{STAGING_COMMON_DIR}/{FSBL}"),
            (ZSBL, f"{STAGING_COMMON_DIR}/{ZSBL}"),
        ),
    ),
}


def supported_chips() -> list[str]:
    return sorted(CHIPS)


def get_chip(chip: str) -> ChipVariant:
    try:
        return CHIPS[chip]
    except KeyError:
        raise UnsupportedChipError(
            f"unknown chip '{chip}', expected one of: {', '.join(supported_chips())}"
        ) from None


def warn(message: str) -> None:
    print(f"Warning: {message}", file=sys.stderr)


def discover_dtbs(directory: Path, patterns: tuple[str, ...]) -> list[Path]:
    """Return the blobs matching the first pattern that matches anything."""
    for pattern in patterns:
        matches = sorted(path for path in directory.glob(pattern) if path.is_file())
        if matches:
            return matches
    warn(f"no device-tree blobs matching {', '.join(patterns)} in {directory}")
    return []


def output_dtbs(out_dir: Path) -> list[Path]:
    dtbs = sorted(path for path in out_dir.glob("*.dtb") if path.is_file())
    if not dtbs:
        warn(f"no DTB files found in {out_dir}")
    return dtbs


def validate_layout(partitions: tuple[PartitionSpec, ...]) -> list[str]:
    errors: list[str] = []
    names: set[str] = set()
    offsets: dict[int, str] = {}
    for spec in partitions:
        if spec.name in names:
            errors.append(f"duplicate partition name '{spec.name}'")
        names.add(spec.name)
        if spec.offset is not None:
            if spec.offset in offsets:
                errors.append(
                    f"'{spec.name}' and '{offsets[spec.offset]}' both claim offset 0x{spec.offset:x}"
                )
            else:
                offsets[spec.offset] = spec.name
        if spec.offset is not None and spec.offset < 0:
            errors.append(f"'{spec.name}' has a negative offset")
        if spec.load_address is not None and spec.load_address < 0:
            errors.append(f"'{spec.name}' has a negative load address")
    return errors


def resolve_layout(chip: str, out_dir: Path) -> ChipLayout:
    variant = get_chip(chip)
    partitions = [
        PartitionSpec(name, out_dir / name, variant.ceiling, offset, load)
        for name, offset, load in variant.partitions
    ]
    for dtb in output_dtbs(out_dir):
        partitions.append(
            PartitionSpec(dtb.name, dtb, variant.ceiling, None, variant.dtb_load_address)
        )

    layout = tuple(partitions)
    errors = validate_layout(layout)
    if errors:
        raise LayoutError(f"invalid layout for {chip}: " + "; ".join(errors))
    return ChipLayout(chip, layout)


def format_hex(value: int | None) -> str:
    return "-" if value is None else f"0x{value:x}"


def main() -> int:
    parser = argparse.ArgumentParser(description="Show the firmware.bin layout for a chip")
    parser.add_argument("--chip", default="sg2044", help="chip variant")
    parser.add_argument("--out", type=Path, default=Path("out"), help="artifact directory")
    args = parser.parse_args()

    try:
        layout = resolve_layout(args.chip, args.out)
    except (UnsupportedChipError, LayoutError) as exc:
        print(exc, file=sys.stderr)
        return 1

    print(f"{layout.chip}: ceiling {format_hex(CHIPS[layout.chip].ceiling)}")
    for spec in layout.partitions:
        print(
            f"  {spec.name:<24} offset {format_hex(spec.offset):<10} "
            f"load {format_hex(spec.load_address)}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
