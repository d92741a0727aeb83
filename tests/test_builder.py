"""Tests for vmbuilder.builder module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from vmbuilder.builder import Builder
from vmbuilder.cache import FileCache
from vmbuilder.exceptions import (
    BuildError,
    CancellationRequested,
    ChecksumMismatch,
    ConfigurationError,
    DriverUnavailable,
)

from conftest import ISO_PAYLOAD, FakeResponse, md5


@pytest.fixture
def builder(fake_driver):
    with (
        patch("vmbuilder.builder.find_vboxmanage", return_value="/usr/bin/VBoxManage"),
        patch("vmbuilder.builder.new_driver", return_value=fake_driver),
    ):
        yield Builder()


@pytest.fixture
def raw_local(tmp_path, local_iso):
    return {
        "iso_url": str(local_iso),
        "iso_checksum": md5(ISO_PAYLOAD),
        "output_directory": str(tmp_path / "output"),
        "vm_name": "test-vm",
        "disk_size": 2048,
    }


class TestPrepare:
    def test_valid_spec(self, builder, raw_local, local_iso):
        builder.prepare(raw_local)
        assert builder.config.iso_url == local_iso.resolve().as_uri()
        assert builder.driver is not None

    def test_checksum_lower_cased(self, builder):
        builder.prepare({"iso_url": "https://example.com/os.iso", "iso_checksum": "D41D8CD98F00B204E9800998ECF8427E"})
        assert builder.config.iso_checksum == "d41d8cd98f00b204e9800998ecf8427e"

    def test_driver_failure_reported_with_config_errors(self):
        with patch("vmbuilder.builder.find_vboxmanage", side_effect=DriverUnavailable("VBoxManage not found on PATH")):
            with pytest.raises(ConfigurationError) as exc_info:
                Builder().prepare({})
        errors = exc_info.value.errors
        assert len(errors) == 3
        assert errors[-1] == "Failed creating VirtualBox driver: VBoxManage not found on PATH"

    def test_missing_local_iso(self, builder, tmp_path, fake_driver):
        with pytest.raises(ConfigurationError, match="iso_url points to bad file"):
            builder.prepare({"iso_url": str(tmp_path / "missing.iso"), "iso_checksum": "0" * 32})
        assert builder.config is None
        assert fake_driver.calls == []


class TestRun:
    def test_run_requires_prepare(self, builder, ui):
        with pytest.raises(BuildError, match="prepare"):
            builder.run(ui)

    def test_successful_build(self, builder, raw_local, ui, fake_driver, tmp_path):
        builder.prepare(raw_local)
        artifact = builder.run(ui, cache=FileCache(tmp_path / "cache"))
        assert artifact.vm_name == "test-vm"
        assert artifact.output_dir == (tmp_path / "output").resolve()
        assert artifact.output_dir.is_dir()
        assert fake_driver.call_names() == [
            "suppress_messages",
            "create_vm",
            "create_disk",
            "add_storage_controller",
            "attach_disk",
            "add_storage_controller",
            "attach_medium",
        ]
        assert ui.errors == []

    def test_checksum_mismatch_halts_before_vm(self, builder, ui, fake_driver, tmp_path):
        builder.prepare(
            {
                "iso_url": "https://example.com/os.iso",
                "iso_checksum": md5(b"something else"),
                "output_directory": str(tmp_path / "output"),
                "download_retries": 1,
            }
        )
        with patch("vmbuilder.utils.urlopen", return_value=FakeResponse(ISO_PAYLOAD)):
            with pytest.raises(ChecksumMismatch):
                builder.run(ui, cache=FileCache(tmp_path / "cache"))
        assert fake_driver.calls == []
        assert not (tmp_path / "output").exists()
        assert any("checksum mismatch" in err for err in ui.errors)

    def test_step_failure_cleans_up_in_reverse(self, builder, raw_local, ui, fake_driver, tmp_path):
        from vmbuilder.exceptions import DriverCommandError

        fake_driver.failures["attach_medium"] = DriverCommandError(["VBoxManage"], 1, "", "boom")
        builder.prepare(raw_local)
        with pytest.raises(BuildError, match="Error attaching ISO"):
            builder.run(ui, cache=FileCache(tmp_path / "cache"))
        assert fake_driver.call_names()[-2:] == ["is_running", "delete_vm"]
        assert not (tmp_path / "output").exists()

    def test_unattached_disk_closed_before_vm_removed(self, builder, raw_local, ui, fake_driver, tmp_path):
        from vmbuilder.exceptions import DriverCommandError

        fake_driver.failures["attach_disk"] = DriverCommandError(["VBoxManage"], 1, "", "boom")
        builder.prepare(raw_local)
        with pytest.raises(BuildError, match="Error creating hard drive"):
            builder.run(ui, cache=FileCache(tmp_path / "cache"))
        disk = (tmp_path / "output").resolve() / "test-vm.vdi"
        assert fake_driver.calls[-3:] == [("delete_disk", disk), ("is_running", "test-vm"), ("delete_vm", "test-vm")]

    def test_cancel_mid_build(self, builder, raw_local, ui, fake_driver, tmp_path):
        def _cancel_during_disk(*args):
            builder.cancel()
            raise CancellationRequested()

        fake_driver.create_disk = _cancel_during_disk
        builder.prepare(raw_local)
        assert builder.run(ui, cache=FileCache(tmp_path / "cache")) is None
        assert "Build was cancelled." in ui.errors
        assert fake_driver.call_names()[-2:] == ["is_running", "delete_vm"]
        assert not (tmp_path / "output").exists()

    def test_cancel_during_download(self, builder, ui, fake_driver, tmp_path):
        builder.prepare(
            {
                "iso_url": "https://example.com/os.iso",
                "iso_checksum": md5(ISO_PAYLOAD),
                "output_directory": str(tmp_path / "output"),
            }
        )
        response = FakeResponse(ISO_PAYLOAD)
        original_read = response.read

        def _read(n):
            builder.cancel()
            return original_read(n)

        response.read = _read
        with patch("vmbuilder.utils.urlopen", return_value=response):
            assert builder.run(ui, cache=FileCache(tmp_path / "cache")) is None
        assert fake_driver.calls == []
        assert list((tmp_path / "cache").glob("*.part")) == []

    def test_cancel_before_run(self, builder, raw_local, ui, fake_driver, tmp_path):
        builder.prepare(raw_local)
        builder.cancel()
        assert builder.run(ui, cache=FileCache(tmp_path / "cache")) is None
        assert fake_driver.calls == []

    def test_cancel_is_idempotent(self, builder):
        builder.cancel()
        builder.cancel()
