"""
Run parameters for the firmware build.

Values come from command-line options first, then the environment, then the
defaults below. The resulting BuildConfig is created once per run and handed
to every step.

Environment:
  CHIP            chip variant (sg2042, sg2044)
  CROSS_COMPILE   cross toolchain prefix
  ARCH            kernel architecture
  KERNEL_CONFIG   kernel defconfig name
  OUT             output directory
  IMAGE_SIZE_MB   size of firmware.img in MiB
  JOBS            parallel make jobs
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

DEFAULT_CHIP = "sg2044"
DEFAULT_CROSS_COMPILE = "riscv64-linux-gnu-"
DEFAULT_ARCH = "riscv"
DEFAULT_KERNEL_CONFIG = "kexec_defconfig"
DEFAULT_IMAGE_SIZE_MIB = 256

OPENSBI_PLATFORM = "generic"
IMAGE_LABEL = "BOOTFIRM"


@dataclass(frozen=True)
class BuildConfig:
    chip: str
    source_dir: Path
    out_dir: Path
    cross_compile: str = DEFAULT_CROSS_COMPILE
    arch: str = DEFAULT_ARCH
    kernel_config: str = DEFAULT_KERNEL_CONFIG
    image_size_mib: int = DEFAULT_IMAGE_SIZE_MIB
    jobs: int = 1

    @property
    def zsbl_dir(self) -> Path:
        return self.source_dir / "zsbl"

    @property
    def opensbi_dir(self) -> Path:
        return self.source_dir / "opensbi"

    @property
    def kernel_dir(self) -> Path:
        return self.source_dir / f"kernel_{self.chip}"

    @property
    def uroot_dir(self) -> Path:
        return self.source_dir / "u-root"

    @property
    def firmware_dir(self) -> Path:
        return self.source_dir / "firmware"

    @property
    def pack_dir(self) -> Path:
        return self.source_dir / "pack"

    @property
    def pack_tool(self) -> Path:
        return self.pack_dir / "pack"

    @property
    def staging_dir(self) -> Path:
        return self.out_dir / "FIRM_OUT"

    @property
    def firmware_bin(self) -> Path:
        return self.source_dir / "firmware.bin"

    @property
    def firmware_img(self) -> Path:
        return self.source_dir / "firmware.img"

    @property
    def mount_point(self) -> Path:
        return self.source_dir / "tmpmnt"

    def make_env(self, base: Mapping[str, str]) -> dict[str, str]:
        env = dict(base)
        env["CROSS_COMPILE"] = self.cross_compile
        env["ARCH"] = self.arch
        return env


def parse_int(name: str, raw: str) -> int:
    try:
        value = int(raw, 0)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chip", help=f"chip variant (default: $CHIP or {DEFAULT_CHIP})")
    parser.add_argument("--cross-compile", help="cross toolchain prefix")
    parser.add_argument("--arch", help="kernel architecture")
    parser.add_argument("--kernel-config", help="kernel defconfig name")
    parser.add_argument(
        "--source-dir",
        type=Path,
        help="tree holding zsbl/, opensbi/, kernel_<chip>/, u-root/, firmware/, pack/",
    )
    parser.add_argument("--out", type=Path, help="output directory (default: <source-dir>/out)")
    parser.add_argument("--image-size", help="firmware.img size in MiB")
    parser.add_argument("--jobs", "-j", help="parallel make jobs")


def load_config(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> BuildConfig:
    if environ is None:
        environ = os.environ

    def pick(option: str | None, env_name: str, default: str) -> str:
        if option is not None:
            return option
        return environ.get(env_name) or default

    source_dir = (getattr(args, "source_dir", None) or Path.cwd()).resolve()
    out_option = getattr(args, "out", None)
    if out_option is not None:
        out_dir = Path(out_option)
    elif environ.get("OUT"):
        out_dir = Path(environ["OUT"])
    else:
        out_dir = source_dir / "out"

    image_size = pick(getattr(args, "image_size", None), "IMAGE_SIZE_MB", str(DEFAULT_IMAGE_SIZE_MIB))
    jobs = pick(getattr(args, "jobs", None), "JOBS", str(os.cpu_count() or 1))

    return BuildConfig(
        chip=pick(getattr(args, "chip", None), "CHIP", DEFAULT_CHIP),
        source_dir=source_dir,
        out_dir=out_dir.resolve(),
        cross_compile=pick(getattr(args, "cross_compile", None), "CROSS_COMPILE", DEFAULT_CROSS_COMPILE),
        arch=pick(getattr(args, "arch", None), "ARCH", DEFAULT_ARCH),
        kernel_config=pick(getattr(args, "kernel_config", None), "KERNEL_CONFIG", DEFAULT_KERNEL_CONFIG),
        image_size_mib=parse_int("image size", image_size),
        jobs=parse_int("jobs", jobs),
    )
