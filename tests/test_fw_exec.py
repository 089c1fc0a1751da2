from pathlib import Path

import pytest

from chip_layout import resolve_layout
from conftest import make_artifacts
from fw_errors import BuildEnvironmentError, BuildError
from fw_exec import CommandRunner
from pack_firmware import compose_flat_image


def test_successful_command_returns_output(tmp_path: Path):
    runner = CommandRunner(use_sudo=False)

    assert runner.run(["echo", "hello"], step="echo", cwd=tmp_path) == "hello\n"


def test_failing_command_raises_requested_error():
    runner = CommandRunner(use_sudo=False)

    with pytest.raises(BuildError) as excinfo:
        runner.run(["false"], step="ZSBL compilation", error=BuildError)

    assert excinfo.value.returncode == 1
    assert excinfo.value.command == ["false"]


def test_missing_tool_is_an_environment_error(tmp_path: Path):
    runner = CommandRunner(use_sudo=False)

    with pytest.raises(BuildEnvironmentError, match="no-such-tool"):
        runner.run([str(tmp_path / "no-such-tool")], step="pack tool build")


def test_missing_working_directory_is_named(tmp_path: Path):
    runner = CommandRunner(use_sudo=False)
    missing = tmp_path / "zsbl"

    with pytest.raises(BuildEnvironmentError) as excinfo:
        runner.run(["true"], step="ZSBL clean", cwd=missing)

    assert str(missing) in str(excinfo.value)
    assert excinfo.value.step == "ZSBL clean"


def test_non_executable_pack_tool_is_an_environment_error(tmp_path: Path, pack_tool: Path):
    pack_tool.chmod(0o644)
    out = make_artifacts(tmp_path / "out", "sg2044")

    with pytest.raises(BuildEnvironmentError) as excinfo:
        compose_flat_image(
            resolve_layout("sg2044", out),
            tmp_path / "firmware.bin",
            pack_tool,
            CommandRunner(use_sudo=False),
        )

    assert excinfo.value.step == "pack riscv64_Image"
    assert str(pack_tool) in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, PermissionError)
