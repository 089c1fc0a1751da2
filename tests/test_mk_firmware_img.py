from pathlib import Path

import pytest

from conftest import FakeRunner, write_blob
from fw_errors import BuildEnvironmentError, DiskImageError, MissingArtifactError
from mk_firmware_img import MIB, compose_disk_image, parse_kpartx_maps


@pytest.fixture
def staging(tmp_path: Path) -> Path:
    root = tmp_path / "out" / "FIRM_OUT"
    write_blob(root / "riscv64" / "riscv64_Image", 16)
    write_blob(root / "zsbl.bin", 16)
    return root


def compose(staging: Path, tmp_path: Path, runner: FakeRunner, size_mib: int = 1) -> Path:
    image = tmp_path / "firmware.img"
    compose_disk_image(staging, image, runner, tmp_path / "tmpmnt", size_mib=size_mib)
    return image


def test_parse_kpartx_maps():
    output = (
        "add map loop3p1 (253:4): 0 522240 linear 7:3 2048\n"
        "device-mapper: reload ioctl failed\n"
    )
    assert parse_kpartx_maps(output) == ["loop3p1"]
    assert parse_kpartx_maps("") == []


def test_successful_run_sequence(staging: Path, tmp_path: Path):
    runner = FakeRunner()

    image = compose(staging, tmp_path, runner, size_mib=256)

    assert image.stat().st_size == 256 * MIB
    assert runner.steps == ["partition", "partition", "map", "format", "mount", "populate", "unmount", "unmap"]
    assert runner.calls[1] == ["parted", "-s", str(image), "mkpart", "primary", "fat32", "0%", "100%"]
    assert runner.calls[3] == ["mkfs.vfat", "-F", "32", "-n", "BOOTFIRM", "/dev/mapper/loop0p1"]
    assert runner.calls[4] == ["mount", "/dev/mapper/loop0p1", str(tmp_path / "tmpmnt")]
    assert runner.calls[5] == [
        "cp",
        "-fR",
        str(staging / "riscv64"),
        str(staging / "zsbl.bin"),
        f"{tmp_path / 'tmpmnt'}/",
    ]
    assert not runner.mapped and not runner.mounted
    assert not (tmp_path / "tmpmnt").exists()


def test_partition_failure_never_maps(staging: Path, tmp_path: Path):
    runner = FakeRunner(fail_on=lambda cmd, step: step == "partition")

    with pytest.raises(DiskImageError, match="partition"):
        compose(staging, tmp_path, runner)

    assert "kpartx" not in runner.tools()


def test_create_failure_runs_no_tools(staging: Path, tmp_path: Path):
    write_blob(tmp_path / "images", 4)
    runner = FakeRunner()

    with pytest.raises(DiskImageError) as excinfo:
        compose_disk_image(staging, tmp_path / "images" / "firmware.img", runner, tmp_path / "tmpmnt", size_mib=1)

    assert excinfo.value.step == "create"
    assert runner.calls == []


def test_map_failure_unwinds_nothing(staging: Path, tmp_path: Path):
    runner = FakeRunner(fail_on=lambda cmd, step: step == "map")

    with pytest.raises(DiskImageError) as excinfo:
        compose(staging, tmp_path, runner)

    assert excinfo.value.step == "map"
    assert runner.steps == ["partition", "partition", "map"]
    assert ["kpartx", "-d", str(tmp_path / "firmware.img")] not in runner.calls
    assert "mkfs.vfat" not in runner.tools()
    assert not runner.mapped


@pytest.mark.parametrize("failing_step", ["format", "mount", "populate"])
def test_failures_after_mapping_release_everything(staging: Path, tmp_path: Path, failing_step: str):
    runner = FakeRunner(fail_on=lambda cmd, step: step == failing_step)

    with pytest.raises(DiskImageError) as excinfo:
        compose(staging, tmp_path, runner)

    assert excinfo.value.step == failing_step
    assert runner.steps[-1] == "unmap"
    assert not runner.mapped
    assert not runner.mounted
    assert not (tmp_path / "tmpmnt").exists()


def test_populate_failure_unmounts_before_unmapping(staging: Path, tmp_path: Path):
    runner = FakeRunner(fail_on=lambda cmd, step: step == "populate")

    with pytest.raises(DiskImageError):
        compose(staging, tmp_path, runner)

    assert runner.steps[-3:] == ["populate", "unmount", "unmap"]


def test_unmount_failure_on_success_path_still_unmaps(staging: Path, tmp_path: Path):
    runner = FakeRunner(fail_on=lambda cmd, step: step == "unmount")

    with pytest.raises(DiskImageError, match="unmount"):
        compose(staging, tmp_path, runner)

    assert runner.steps[-1] == "unmap"
    assert not runner.mapped


def test_cleanup_failure_does_not_hide_the_original_error(staging: Path, tmp_path: Path, capsys):
    runner = FakeRunner(fail_on=lambda cmd, step: step in {"populate", "unmount"})

    with pytest.raises(DiskImageError) as excinfo:
        compose(staging, tmp_path, runner)

    assert excinfo.value.step == "populate"
    assert "cleanup failed" in capsys.readouterr().err
    assert runner.steps[-1] == "unmap"


@pytest.mark.parametrize(
    "output",
    [
        "",
        "add map loop0p1 (253:0): 0 261120 linear 7:0 2048\nadd map loop0p2 (253:1): 0 261120 linear 7:0 264192\n",
    ],
)
def test_unexpected_mapping_count_is_an_environment_error(staging: Path, tmp_path: Path, output: str):
    runner = FakeRunner(outputs={"map": output})

    with pytest.raises(BuildEnvironmentError) as excinfo:
        compose(staging, tmp_path, runner)

    assert excinfo.value.output == output
    assert runner.steps[-1] == "unmap"
    assert "mkfs.vfat" not in runner.tools()


def test_missing_staging_directory(tmp_path: Path):
    runner = FakeRunner()

    with pytest.raises(MissingArtifactError, match="does not exist"):
        compose(tmp_path / "absent", tmp_path, runner)

    assert runner.calls == []
    assert not (tmp_path / "firmware.img").exists()
