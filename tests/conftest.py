from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from chip_layout import CHIPS, INITRD, KERNEL_IMAGE, SBI_FIRMWARE, ZSBL
from fw_errors import FirmwareError
from fw_exec import CommandRunner

KPARTX_OUTPUT = "add map loop0p1 (253:0): 0 522240 linear 7:0 2048\n"


class FakeRunner(CommandRunner):
    """Records commands instead of running them and tracks loop/mount state."""

    def __init__(
        self,
        fail_on: Callable[[list[str], str], bool] | None = None,
        outputs: dict[str, str] | None = None,
        hooks: dict[str, Callable[[list[str]], None]] | None = None,
    ) -> None:
        super().__init__(use_sudo=False)
        self.fail_on = fail_on or (lambda cmd, step: False)
        self.outputs = {"map": KPARTX_OUTPUT, **(outputs or {})}
        self.hooks = hooks or {}
        self.calls: list[list[str]] = []
        self.steps: list[str] = []
        self.envs: list[dict[str, str] | None] = []
        self.mapped = False
        self.mounted = False

    def run(self, cmd, *, step, error=FirmwareError, cwd=None, env=None, **details):
        self.calls.append(list(cmd))
        self.steps.append(step)
        self.envs.append(dict(env) if env is not None else None)
        if self.fail_on(list(cmd), step):
            raise error(
                f"{step}: '{' '.join(cmd)}' exited with status 1",
                step=step,
                command=list(cmd),
                returncode=1,
                output="simulated failure",
                **details,
            )
        if step == "map":
            self.mapped = True
        elif step == "unmap":
            self.mapped = False
        elif step == "mount":
            self.mounted = True
        elif step == "unmount":
            self.mounted = False
        hook = self.hooks.get(step)
        if hook is not None:
            hook(list(cmd))
        return self.outputs.get(step, "")

    def tools(self) -> list[str]:
        return [cmd[0] for cmd in self.calls]


def write_blob(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(bytes([len(path.name) % 251]) * size)
    return path


def make_artifacts(out_dir: Path, chip: str, dtbs: tuple[str, ...] = ()) -> Path:
    names = [ZSBL, SBI_FIRMWARE, KERNEL_IMAGE, INITRD, *CHIPS[chip].first_stage]
    for name in names:
        write_blob(out_dir / name, 64)
    for dtb in dtbs:
        write_blob(out_dir / dtb, 32)
    return out_dir


@pytest.fixture
def pack_tool(tmp_path: Path) -> Path:
    return write_blob(tmp_path / "pack" / "pack", 8)


@pytest.fixture(autouse=True)
def clean_build_environment(monkeypatch):
    for name in ("CHIP", "CROSS_COMPILE", "ARCH", "KERNEL_CONFIG", "OUT", "IMAGE_SIZE_MB", "JOBS"):
        monkeypatch.delenv(name, raising=False)
