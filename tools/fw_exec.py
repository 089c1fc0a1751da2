"""
Thin wrapper around the external tools the build drives.

Each call either returns the tool's combined output or raises the error type
the caller names. Nothing is retried.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Mapping

from fw_errors import BuildEnvironmentError, FirmwareError


def describe(cmd: list[str]) -> str:
    return " ".join(cmd)


class CommandRunner:
    def __init__(self, use_sudo: bool | None = None) -> None:
        if use_sudo is None:
            use_sudo = os.geteuid() != 0
        self.use_sudo = use_sudo

    def privileged(self, cmd: list[str]) -> list[str]:
        if not self.use_sudo:
            return list(cmd)
        if shutil.which("sudo") is None:
            raise BuildEnvironmentError(
                f"'{cmd[0]}' needs root privileges and sudo is not available",
                command=list(cmd),
            )
        return ["sudo", *cmd]

    def run(
        self,
        cmd: list[str],
        *,
        step: str,
        error: type[FirmwareError] = FirmwareError,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        **details,
    ) -> str:
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            # filename is the working directory when chdir failed, else the tool
            missing = exc.filename if exc.filename is not None else cmd[0]
            raise BuildEnvironmentError(
                f"{step}: cannot run '{cmd[0]}': {exc.strerror or exc}: {missing}",
                step=step,
                command=list(cmd),
            ) from exc
        if result.returncode != 0:
            raise error(
                f"{step}: '{describe(cmd)}' exited with status {result.returncode}",
                step=step,
                command=list(cmd),
                returncode=result.returncode,
                output=result.stdout or "",
                **details,
            )
        return result.stdout or ""
