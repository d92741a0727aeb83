"""Shared test fixtures: recording UI, fake driver and build state factory."""

from __future__ import annotations

import hashlib
import io
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from vmbuilder.cache import FileCache
from vmbuilder.driver import Driver
from vmbuilder.models import BuildConfig
from vmbuilder.state import BuildState
from vmbuilder.ui import NoopHook

ISO_PAYLOAD = b"fake-installation-medium" * 4096


class RecordingUi:
    def __init__(self) -> None:
        self.said: List[str] = []
        self.messages: List[str] = []
        self.errors: List[str] = []

    def say(self, message: str) -> None:
        self.said.append(message)

    def message(self, message: str) -> None:
        self.messages.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class FakeDriver(Driver):
    """In-memory driver recording every call; ``failures`` maps a method to the exception it raises."""

    def __init__(self) -> None:
        self.calls: List[Tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.running = False

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def verify(self) -> None:
        self._record("verify")

    def version(self):
        return (7, 0, 12)

    def create_vm(self, name, os_type, base_folder) -> None:
        self._record("create_vm", name, os_type, base_folder)

    def delete_vm(self, name) -> None:
        self._record("delete_vm", name)

    def create_disk(self, path, size_mb) -> None:
        self._record("create_disk", path, size_mb)

    def delete_disk(self, path) -> None:
        self._record("delete_disk", path)

    def add_storage_controller(self, vm, name, bus) -> None:
        self._record("add_storage_controller", vm, name, bus)

    def attach_disk(self, vm, controller, path) -> None:
        self._record("attach_disk", vm, controller, path)

    def attach_medium(self, vm, path) -> None:
        self._record("attach_medium", vm, path)

    def detach_medium(self, vm) -> None:
        self._record("detach_medium", vm)

    def suppress_messages(self) -> None:
        self._record("suppress_messages")

    def is_running(self, name) -> bool:
        self.calls.append(("is_running", name))
        return self.running

    def stop(self, name) -> None:
        self._record("stop", name)


class FakeResponse:
    def __init__(self, payload: bytes, content_length: bool = True) -> None:
        self._buf = io.BytesIO(payload)
        self.headers = {"Content-Length": str(len(payload))} if content_length else {}
        self.closed = False

    def read(self, n: int) -> bytes:
        return self._buf.read(n)

    def close(self) -> None:
        self.closed = True


def md5(payload: bytes) -> str:
    return hashlib.md5(payload).hexdigest()


@pytest.fixture
def ui() -> RecordingUi:
    return RecordingUi()


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def local_iso(tmp_path) -> Path:
    iso = tmp_path / "install.iso"
    iso.write_bytes(ISO_PAYLOAD)
    return iso


@pytest.fixture
def local_config(tmp_path, local_iso) -> BuildConfig:
    return BuildConfig(
        guest_os_type="Ubuntu_64",
        output_directory=str(tmp_path / "output"),
        vm_name="test-vm",
        iso_url=local_iso.as_uri(),
        iso_checksum=md5(ISO_PAYLOAD),
        disk_size=2048,
    )


@pytest.fixture
def remote_config(tmp_path) -> BuildConfig:
    return BuildConfig(
        guest_os_type="Ubuntu_64",
        output_directory=str(tmp_path / "output"),
        vm_name="test-vm",
        iso_url="https://example.com/os.iso",
        iso_checksum=md5(ISO_PAYLOAD),
        disk_size=2048,
        download_retries=1,
    )


@pytest.fixture
def make_state(tmp_path, fake_driver, ui):
    """Build a BuildState around the fake driver and a temporary cache."""

    def _make(config: BuildConfig, cache: Optional[FileCache] = None, hook=None) -> BuildState:
        return BuildState(
            config=config,
            driver=fake_driver,
            cache=cache or FileCache(tmp_path / "cache"),
            ui=ui,
            hook=hook or NoopHook(),
        )

    return _make


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set
