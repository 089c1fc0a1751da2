#!/usr/bin/env python3
"""
Build the RISC-V firmware payload: ZSBL, OpenSBI, the kernel and its device
trees, a u-root initrd, and package them into firmware.bin and firmware.img.

Usage:
  build_firmware.py [options] [operation]

Operations:
  all                  build everything, then firmware.bin and firmware.img (default)
  clean                remove generated files and clean every component
  firmware.bin         build prerequisites, then pack firmware.bin
  firmware.img         build prerequisites, then compose firmware.img
  package_bin          pack firmware.bin from an existing output directory
  package_img          compose firmware.img from an existing staging tree
  build_prerequisites  build every component and stage FIRM_OUT
  stage                stage FIRM_OUT from an existing output directory
  zsbl_build | opensbi_build | kernel_build | uroot_build |
  copy_firmware_files | pack_tool_build

Environment:
  CHIP, CROSS_COMPILE, ARCH, KERNEL_CONFIG, OUT, IMAGE_SIZE_MB, JOBS
  (command-line options win), e.g. CHIP=sg2042 build_firmware.py all
"""

from __future__ import annotations

import argparse
import os
import re
import shutil
import sys
from pathlib import Path
from typing import Callable, Mapping

from chip_layout import (
    INITRD,
    KERNEL_IMAGE,
    SBI_FIRMWARE,
    ZSBL,
    discover_dtbs,
    get_chip,
    resolve_layout,
)
from fw_config import OPENSBI_PLATFORM, BuildConfig, add_config_arguments, load_config
from fw_errors import BuildError, FirmwareError, MissingArtifactError, format_cause_chain
from fw_exec import CommandRunner
from mk_firmware_img import compose_disk_image, unmap_image, unmount
from pack_firmware import compose_flat_image
from stage_firmware import assemble_staging

# u-root does not build with newer toolchains.
GO_VERSION_LIMIT = (1, 22)
GO_VERSION_RE = re.compile(r"go(\d+)\.(\d+)(?:\.(\d+))?")


def banner(text: str) -> None:
    print(f"--- {text} ---")


def warn(message: str) -> None:
    print(f"Warning: {message}", file=sys.stderr)


def copy_artifact(src: Path, dest: Path) -> None:
    if not src.is_file():
        raise MissingArtifactError(f"expected build output {src} is missing")
    print(f"  Copying {src} to {dest}...")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
    except OSError as exc:
        raise MissingArtifactError(f"failed to copy {src} to {dest}: {exc}") from exc


def make(config: BuildConfig, runner: CommandRunner, directory: Path, *targets: str, step: str) -> None:
    runner.run(
        ["make", f"-j{config.jobs}", *targets],
        step=step,
        error=BuildError,
        cwd=directory,
        env=config.make_env(os.environ),
    )


def zsbl_build(config: BuildConfig, runner: CommandRunner) -> None:
    banner("Building ZSBL")
    config.out_dir.mkdir(parents=True, exist_ok=True)
    make(config, runner, config.zsbl_dir, "clean", step="ZSBL clean")
    print(f"  Configuring ZSBL with {config.chip}_defconfig...")
    make(config, runner, config.zsbl_dir, f"{config.chip}_defconfig", step="ZSBL defconfig")
    print("  Compiling ZSBL (zsbl.bin)...")
    make(config, runner, config.zsbl_dir, ZSBL, step="ZSBL compilation")
    copy_artifact(config.zsbl_dir / ZSBL, config.out_dir / ZSBL)
    banner("ZSBL build complete")


def opensbi_build(config: BuildConfig, runner: CommandRunner) -> None:
    banner("Building OpenSBI")
    config.out_dir.mkdir(parents=True, exist_ok=True)
    make(config, runner, config.opensbi_dir, "clean", step="OpenSBI clean")
    print(f"  Compiling OpenSBI for platform {OPENSBI_PLATFORM}...")
    make(
        config,
        runner,
        config.opensbi_dir,
        f"PLATFORM={OPENSBI_PLATFORM}",
        "FW_PIC=y",
        "BUILD_INFO=y",
        step="OpenSBI compilation",
    )
    built = config.opensbi_dir / "build" / "platform" / OPENSBI_PLATFORM / "firmware" / SBI_FIRMWARE
    copy_artifact(built, config.out_dir / SBI_FIRMWARE)
    banner("OpenSBI build complete")


def kernel_build(config: BuildConfig, runner: CommandRunner) -> None:
    variant = get_chip(config.chip)
    banner("Building Kernel and DTB files")
    config.out_dir.mkdir(parents=True, exist_ok=True)
    print(f"  Configuring Kernel with {config.kernel_config} in {config.kernel_dir}...")
    make(config, runner, config.kernel_dir, config.kernel_config, step="Kernel defconfig")
    print("  Compiling Kernel...")
    make(config, runner, config.kernel_dir, step="Kernel compilation")
    copy_artifact(config.kernel_dir / "arch" / "riscv" / "boot" / "Image", config.out_dir / KERNEL_IMAGE)

    dts_dir = config.kernel_dir / "arch" / "riscv" / "boot" / "dts" / "sophgo"
    for dtb in discover_dtbs(dts_dir, variant.dtb_patterns):
        copy_artifact(dtb, config.out_dir / dtb.name)
    banner("Kernel build complete")


def parse_go_version(output: str) -> tuple[int, int, int]:
    match = GO_VERSION_RE.search(output)
    if match is None:
        raise BuildError(f"cannot parse Go version from '{output.strip()}'", step="go version")
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def check_go_version(runner: CommandRunner) -> None:
    banner("Checking Go compiler version")
    version = parse_go_version(runner.run(["go", "version"], step="go version", error=BuildError))
    text = ".".join(str(part) for part in version)
    print(f"  Detected Go version: {text}")
    if version[:2] >= GO_VERSION_LIMIT:
        limit = ".".join(str(part) for part in GO_VERSION_LIMIT)
        raise BuildError(
            f"Go compiler version {text} must be less than {limit}, please downgrade",
            step="go version",
        )
    banner("Go version check complete")


def uroot_build(config: BuildConfig, runner: CommandRunner) -> None:
    check_go_version(runner)
    banner("Building u-root initrd")
    config.out_dir.mkdir(parents=True, exist_ok=True)
    print(f"  Building u-root in {config.uroot_dir}...")
    runner.run(["go", "build"], step="u-root go build", error=BuildError, cwd=config.uroot_dir)

    print(f"  Creating {INITRD}...")
    env = dict(os.environ, GOOS="linux", GOARCH="riscv64")
    runner.run(
        [
            str(config.uroot_dir / "u-root"),
            "-uroot-source", str(config.uroot_dir),
            "-build", "bb",
            "-uinitcmd=boot",
            "-o", str(config.out_dir / INITRD),
            "core", "boot",
        ],
        step="u-root initrd creation",
        error=BuildError,
        cwd=config.source_dir,
        env=env,
    )
    if not (config.out_dir / INITRD).is_file():
        raise MissingArtifactError(f"u-root reported success but {config.out_dir / INITRD} is missing")
    banner("u-root initrd build complete")


def copy_firmware_files(config: BuildConfig, runner: CommandRunner) -> None:
    variant = get_chip(config.chip)
    banner("Copying firmware-specific files")
    config.out_dir.mkdir(parents=True, exist_ok=True)
    for name in variant.first_stage:
        copy_artifact(config.firmware_dir / config.chip / name, config.out_dir / name)
    banner("Firmware-specific files copied")


def pack_tool_build(config: BuildConfig, runner: CommandRunner) -> None:
    banner("Building pack tool")
    make(config, runner, config.pack_dir, step="pack tool build")
    if not config.pack_tool.is_file():
        raise MissingArtifactError(f"pack tool build did not produce {config.pack_tool}")
    banner("Pack tool build complete")


def stage(config: BuildConfig, runner: CommandRunner) -> None:
    assemble_staging(config.chip, config.out_dir)


def build_prerequisites(config: BuildConfig, runner: CommandRunner) -> None:
    banner("Running all build prerequisites")
    for step in COMPONENT_BUILDS:
        step(config, runner)
    banner("All individual components built")
    stage(config, runner)


def package_bin(config: BuildConfig, runner: CommandRunner) -> None:
    layout = resolve_layout(config.chip, config.out_dir)
    compose_flat_image(layout, config.firmware_bin, config.pack_tool, runner)


def package_img(config: BuildConfig, runner: CommandRunner) -> None:
    compose_disk_image(
        config.staging_dir,
        config.firmware_img,
        runner,
        config.mount_point,
        size_mib=config.image_size_mib,
    )


def firmware_bin(config: BuildConfig, runner: CommandRunner) -> None:
    build_prerequisites(config, runner)
    package_bin(config, runner)


def firmware_img(config: BuildConfig, runner: CommandRunner) -> None:
    build_prerequisites(config, runner)
    package_img(config, runner)


def build_all(config: BuildConfig, runner: CommandRunner) -> None:
    build_prerequisites(config, runner)
    package_bin(config, runner)
    package_img(config, runner)


def best_effort(action: Callable[[], object], what: str) -> None:
    try:
        action()
    except (FirmwareError, OSError) as exc:
        warn(f"{what} failed: {exc}")


def remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


# /proc/mounts writes space, tab, newline and backslash as octal escapes.
MOUNT_ESCAPE_RE = re.compile(r"\\([0-7]{3})")


def decode_mount_field(field: str) -> str:
    return MOUNT_ESCAPE_RE.sub(lambda match: chr(int(match.group(1), 8)), field)


def is_mounted(path: Path, mounts: Path = Path("/proc/mounts")) -> bool:
    try:
        lines = mounts.read_text(encoding="utf-8").splitlines()
    except OSError:
        return False
    target = str(path)
    for line in lines:
        fields = line.split()
        if len(fields) > 1 and decode_mount_field(fields[1]) == target:
            return True
    return False


def clean(config: BuildConfig, runner: CommandRunner) -> None:
    banner("Cleaning all generated files and intermediate build products")
    if is_mounted(config.mount_point):
        print(f"  Unmounting {config.mount_point}...")
        best_effort(lambda: unmount(config.mount_point, runner), "umount")
    if config.firmware_img.exists():
        print(f"  Removing kpartx mappings for {config.firmware_img}...")
        best_effort(lambda: unmap_image(config.firmware_img, runner), "kpartx -d")

    print(f"  Removing output directory '{config.out_dir}' and generated images...")
    for path in (config.out_dir, config.firmware_img, config.firmware_bin):
        best_effort(lambda path=path: remove_path(path), f"removing {path}")

    for label, directory in (
        ("ZSBL", config.zsbl_dir),
        ("OpenSBI", config.opensbi_dir),
        ("Kernel", config.kernel_dir),
        ("u-root", config.uroot_dir),
        ("pack tool", config.pack_dir),
    ):
        if not directory.is_dir():
            continue
        print(f"  Cleaning {label} directory...")
        best_effort(
            lambda directory=directory, label=label: make(
                config, runner, directory, "clean", step=f"{label} clean"
            ),
            f"{label} clean",
        )
    banner("Cleaning complete")


COMPONENT_BUILDS: tuple[Callable[[BuildConfig, CommandRunner], None], ...] = (
    zsbl_build,
    opensbi_build,
    kernel_build,
    uroot_build,
    copy_firmware_files,
    pack_tool_build,
)

OPERATIONS: Mapping[str, Callable[[BuildConfig, CommandRunner], None]] = {
    "all": build_all,
    "clean": clean,
    "firmware.bin": firmware_bin,
    "firmware.img": firmware_img,
    "package_bin": package_bin,
    "package_img": package_img,
    "build_prerequisites": build_prerequisites,
    "stage": stage,
    "zsbl_build": zsbl_build,
    "opensbi_build": opensbi_build,
    "kernel_build": kernel_build,
    "uroot_build": uroot_build,
    "copy_firmware_files": copy_firmware_files,
    "pack_tool_build": pack_tool_build,
}


def run_operation(name: str, config: BuildConfig, runner: CommandRunner) -> None:
    # Reject unknown chips before touching anything on disk.
    get_chip(config.chip)
    OPERATIONS[name](config, runner)


def main(argv: list[str] | None = None, runner: CommandRunner | None = None) -> int:
    parser = argparse.ArgumentParser(description="Build and package RISC-V firmware")
    parser.add_argument("operation", nargs="?", default="all", choices=list(OPERATIONS))
    add_config_arguments(parser)
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        run_operation(args.operation, config, runner or CommandRunner())
    except FirmwareError as exc:
        for line in format_cause_chain(exc):
            print(line, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
