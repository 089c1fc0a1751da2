#!/usr/bin/env python3
"""
Build firmware.img: an MBR disk image with one FAT32 partition labelled
BOOTFIRM holding the staged firmware tree.

Usage:
  mk_firmware_img.py [--size MIB] [--mount-point DIR] staging_dir output.img

Needs parted, kpartx, mkfs.vfat and mount. They run through sudo unless the
script already runs as root.

The loop mapping and the mount are released on every exit path, including
failures part way through, so repeated runs do not leave stale loop devices
or mounts behind.
"""

from __future__ import annotations

import argparse
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from fw_config import DEFAULT_IMAGE_SIZE_MIB, IMAGE_LABEL
from fw_errors import (
    BuildEnvironmentError,
    DiskImageError,
    FirmwareError,
    MissingArtifactError,
    format_cause_chain,
)
from fw_exec import CommandRunner

MIB = 1024 * 1024

# "add map loop0p1 (253:0): 0 522240 linear 7:0 2048"
ADD_MAP_RE = re.compile(r"^add map (\S+)")


def warn(message: str) -> None:
    print(f"Warning: {message}", file=sys.stderr)


def create_image(image: Path, size_mib: int) -> None:
    print(f"  Creating empty image file: {image} with size {size_mib}MB...")
    try:
        image.parent.mkdir(parents=True, exist_ok=True)
        with image.open("wb") as fh:
            fh.truncate(size_mib * MIB)
    except OSError as exc:
        raise DiskImageError(f"create: cannot allocate {image}: {exc}", step="create") from exc


def partition_image(image: Path, runner: CommandRunner) -> None:
    print("  Partitioning image file with MBR and FAT32 partition...")
    runner.run(
        runner.privileged(["parted", "-s", str(image), "mktable", "msdos"]),
        step="partition",
        error=DiskImageError,
    )
    runner.run(
        runner.privileged(["parted", "-s", str(image), "mkpart", "primary", "fat32", "0%", "100%"]),
        step="partition",
        error=DiskImageError,
    )


def parse_kpartx_maps(output: str) -> list[str]:
    maps: list[str] = []
    for line in output.splitlines():
        match = ADD_MAP_RE.match(line.strip())
        if match:
            maps.append(match.group(1))
    return maps


def unmap_image(image: Path, runner: CommandRunner) -> None:
    runner.run(
        runner.privileged(["kpartx", "-d", str(image)]),
        step="unmap",
        error=DiskImageError,
    )


def release(action, *args) -> None:
    """Run a cleanup step while another error is already on its way out."""
    try:
        action(*args)
    except FirmwareError as exc:
        warn(f"cleanup failed: {exc}")


@contextmanager
def loop_mapping(image: Path, runner: CommandRunner) -> Iterator[Path]:
    print("  Mapping image partitions to loop devices using kpartx...")
    output = runner.run(
        runner.privileged(["kpartx", "-av", str(image)]),
        step="map",
        error=DiskImageError,
    )
    maps = parse_kpartx_maps(output)
    if len(maps) != 1:
        release(unmap_image, image, runner)
        found = "no" if not maps else f"{len(maps)}"
        raise BuildEnvironmentError(
            f"map: kpartx reported {found} partition mappings for {image}, expected 1",
            step="map",
            output=output,
        )

    device = Path("/dev/mapper") / maps[0]
    print(f"  Mapped partition device: {device}")
    try:
        yield device
    except BaseException:
        release(unmap_image, image, runner)
        raise
    unmap_image(image, runner)


def format_partition(device: Path, label: str, runner: CommandRunner) -> None:
    print(f"  Formatting partition {device} as FAT32...")
    runner.run(
        runner.privileged(["mkfs.vfat", "-F", "32", "-n", label, str(device)]),
        step="format",
        error=DiskImageError,
    )


def unmount(mount_point: Path, runner: CommandRunner) -> None:
    runner.run(
        runner.privileged(["umount", str(mount_point)]),
        step="unmount",
        error=DiskImageError,
    )


def remove_mount_point(mount_point: Path) -> None:
    # Something else may still hold files there; leaving the directory is fine.
    try:
        mount_point.rmdir()
    except OSError as exc:
        warn(f"could not remove mount point {mount_point}: {exc}")


@contextmanager
def mounted(device: Path, mount_point: Path, runner: CommandRunner) -> Iterator[Path]:
    print(f"  Creating mount point {mount_point} and mounting partition...")
    try:
        mount_point.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DiskImageError(f"mount: cannot create {mount_point}: {exc}", step="mount") from exc
    try:
        runner.run(
            runner.privileged(["mount", str(device), str(mount_point)]),
            step="mount",
            error=DiskImageError,
        )
    except FirmwareError:
        remove_mount_point(mount_point)
        raise

    try:
        yield mount_point
    except BaseException:
        release(unmount, mount_point, runner)
        remove_mount_point(mount_point)
        raise
    try:
        unmount(mount_point, runner)
    finally:
        remove_mount_point(mount_point)


def populate(staging: Path, mount_point: Path, runner: CommandRunner) -> None:
    entries = sorted(staging.iterdir())
    print(f"  Copying firmware files from {staging}/ to {mount_point}/...")
    if not entries:
        warn(f"{staging} is empty, firmware.img will hold no files")
        return
    runner.run(
        runner.privileged(["cp", "-fR", *[str(entry) for entry in entries], f"{mount_point}/"]),
        step="populate",
        error=DiskImageError,
    )


def compose_disk_image(
    staging: Path,
    image: Path,
    runner: CommandRunner,
    mount_point: Path,
    size_mib: int = DEFAULT_IMAGE_SIZE_MIB,
    label: str = IMAGE_LABEL,
) -> None:
    if not staging.is_dir():
        raise MissingArtifactError(f"staging directory {staging} does not exist")

    print(f"--- Starting disk image creation for {image} ---")
    create_image(image, size_mib)
    partition_image(image, runner)
    with loop_mapping(image, runner) as device:
        format_partition(device, label, runner)
        with mounted(device, mount_point, runner) as target:
            populate(staging, target, runner)
            print("  Unmounting partition and cleaning up loop devices...")
    print(f"--- Disk image {image} created and populated successfully ---")


def main() -> int:
    parser = argparse.ArgumentParser(description="Build firmware.img from a staging tree")
    parser.add_argument("staging_dir", type=Path)
    parser.add_argument("output", type=Path)
    parser.add_argument("--size", type=int, default=DEFAULT_IMAGE_SIZE_MIB, help="image size in MiB")
    parser.add_argument("--mount-point", type=Path, default=Path("tmpmnt"))
    args = parser.parse_args()

    if args.size <= 0:
        raise SystemExit("--size must be positive")

    try:
        compose_disk_image(
            args.staging_dir.resolve(),
            args.output.resolve(),
            CommandRunner(),
            args.mount_point.resolve(),
            size_mib=args.size,
        )
    except FirmwareError as exc:
        for line in format_cause_chain(exc):
            print(line, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
