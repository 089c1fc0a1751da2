#!/usr/bin/env python3
"""
Lay out the built artifacts as they will appear on firmware.img.

Usage:
  stage_firmware.py [--chip CHIP] [--out DIR]

Rebuilds DIR/FIRM_OUT from scratch on every run.
"""

from __future__ import annotations

import argparse
import shutil
import sys
from pathlib import Path

from chip_layout import (
    INITRD,
    KERNEL_IMAGE,
    SBI_FIRMWARE,
    STAGING_COMMON_DIR,
    get_chip,
    output_dtbs,
)
from fw_errors import FirmwareError, MissingArtifactError, format_cause_chain

STAGING_NAME = "FIRM_OUT"


def staging_plan(chip: str, out_dir: Path) -> list[tuple[Path, str]]:
    variant = get_chip(chip)
    plan: list[tuple[Path, str]] = []
    for dtb in output_dtbs(out_dir):
        plan.append((dtb, f"{STAGING_COMMON_DIR}/{dtb.name}"))
    for name in (KERNEL_IMAGE, INITRD, SBI_FIRMWARE):
        plan.append((out_dir / name, f"{STAGING_COMMON_DIR}/{name}"))
    for name, dest in variant.staging_extras:
        plan.append((out_dir / name, dest))
    return plan


def assemble_staging(chip: str, out_dir: Path) -> Path:
    plan = staging_plan(chip, out_dir)
    missing = [str(src) for src, _ in plan if not src.is_file()]
    if missing:
        raise MissingArtifactError(f"cannot stage {chip} firmware, missing: {', '.join(missing)}")

    root = out_dir / STAGING_NAME
    print(f"--- Preparing {STAGING_NAME} directory for image creation ---")
    if root.exists():
        shutil.rmtree(root)
    root.mkdir(parents=True)
    # Both image layouts keep the common directory even when nothing lands in it.
    (root / STAGING_COMMON_DIR).mkdir()

    for src, rel in plan:
        dest = root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        print(f"  Copying {src.name} to {dest.parent}/...")
        try:
            shutil.copy2(src, dest)
        except OSError as exc:
            raise MissingArtifactError(f"failed to copy {src} to {dest}: {exc}") from exc
    print(f"--- Staged {len(plan)} files in {root} ---")
    return root


def collect_entries(root: Path) -> list[str]:
    return [
        path.relative_to(root).as_posix()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    ]


def main() -> int:
    parser = argparse.ArgumentParser(description="Stage artifacts for firmware.img")
    parser.add_argument("--chip", default="sg2044", help="chip variant")
    parser.add_argument("--out", type=Path, default=Path("out"), help="artifact directory")
    args = parser.parse_args()

    try:
        root = assemble_staging(args.chip, args.out.resolve())
    except FirmwareError as exc:
        for line in format_cause_chain(exc):
            print(line, file=sys.stderr)
        return 1
    for entry in collect_entries(root):
        print(entry)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
