"""
Error types raised while building the firmware payload.

Every failure aborts the run. Tool failures keep the step name, the command
line, the exit status and whatever the tool printed so the CLI can show the
whole cause chain.
"""

from __future__ import annotations


class FirmwareError(Exception):
    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        command: list[str] | None = None,
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.step = step
        self.command = command
        self.returncode = returncode
        self.output = output

    def __str__(self) -> str:
        text = super().__str__()
        if self.output:
            text = f"{text}\n{self.output.rstrip()}"
        return text


class BuildError(FirmwareError):
    """An artifact failed to build."""


class MissingArtifactError(FirmwareError):
    """An expected artifact is absent."""


class UnsupportedChipError(FirmwareError):
    pass


class LayoutError(FirmwareError):
    pass


class PackError(FirmwareError):
    def __init__(self, message: str, *, partition: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.partition = partition


class DiskImageError(FirmwareError):
    pass


class BuildEnvironmentError(FirmwareError):
    """Host problem: missing tool, missing privilege, unexpected tool output."""


def format_cause_chain(exc: BaseException) -> list[str]:
    lines: list[str] = []
    current: BaseException | None = exc
    while current is not None:
        prefix = "error" if not lines else "caused by"
        lines.append(f"{prefix}: {current}")
        current = current.__cause__
    return lines
