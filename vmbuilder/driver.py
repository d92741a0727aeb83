"""VBoxManage driver for vmbuilder."""

from __future__ import annotations

import os
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Tuple, Type

from vmbuilder.constants import (
    IDE_CONTROLLER,
    SATA_CONTROLLER,
    VBOX_INSTALL_ENV_VARS,
    VBOX_VERSION_RE,
    VBOXMANAGE_ERROR_SIGNATURE,
    VBOXMANAGE_NAMES,
)
from vmbuilder.exceptions import CancellationRequested, DriverCommandError, DriverUnavailable
from vmbuilder.utils import get_env, log

_POLL_INTERVAL = 0.2
_TERMINATE_GRACE = 5.0


class Driver(ABC):
    """Operations the build steps need from the virtualization tool."""

    @abstractmethod
    def verify(self) -> None:
        """Raise DriverUnavailable if the tool cannot be used."""

    @abstractmethod
    def version(self) -> Tuple[int, int, int]: ...

    @abstractmethod
    def create_vm(self, name: str, os_type: str, base_folder: Path) -> None: ...

    @abstractmethod
    def delete_vm(self, name: str) -> None: ...

    @abstractmethod
    def create_disk(self, path: Path, size_mb: int) -> None: ...

    @abstractmethod
    def delete_disk(self, path: Path) -> None: ...

    @abstractmethod
    def add_storage_controller(self, vm: str, name: str, bus: str) -> None: ...

    @abstractmethod
    def attach_disk(self, vm: str, controller: str, path: Path) -> None: ...

    @abstractmethod
    def attach_medium(self, vm: str, path: Path) -> None: ...

    @abstractmethod
    def detach_medium(self, vm: str) -> None: ...

    @abstractmethod
    def suppress_messages(self) -> None: ...

    @abstractmethod
    def is_running(self, name: str) -> bool: ...

    @abstractmethod
    def stop(self, name: str) -> None: ...


def parse_version(output: str) -> Tuple[int, int, int]:
    match = VBOX_VERSION_RE.match(output.strip())
    if not match:
        raise DriverUnavailable(f"Unrecognised VBoxManage version string: {output.strip()!r}")
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


class VBoxManageDriver(Driver):
    """Commands shared by every VBoxManage release."""

    supported_majors: Tuple[int, ...] = ()

    def __init__(self, vboxmanage_path: Path, cancel: Optional[threading.Event] = None) -> None:
        self.path = Path(vboxmanage_path)
        self.cancel = cancel

    def vboxmanage(self, *args: str) -> str:
        """Run VBoxManage with ``args`` and return its stdout."""
        cmd = [str(self.path), *args]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        # Commands started after cancellation (cleanup) run to completion.
        watch_cancel = self.cancel is not None and not self.cancel.is_set()
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            raise DriverCommandError(cmd, None, "", str(exc)) from exc

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if watch_cancel and self.cancel.is_set():
                    self._terminate(proc, cmd)
                    raise CancellationRequested()

        if stdout.strip():
            log("DEBUG", f"stdout: {stdout.strip()}")
        if stderr.strip():
            log("DEBUG", f"stderr: {stderr.strip()}")
        if proc.returncode != 0 or VBOXMANAGE_ERROR_SIGNATURE in stderr:
            raise DriverCommandError(cmd, proc.returncode, stdout, stderr)
        return stdout.strip()

    @staticmethod
    def _terminate(proc: subprocess.Popen, cmd) -> None:
        log("WARN", f"Terminating {' '.join(cmd)} (build cancelled)")
        proc.terminate()
        try:
            proc.communicate(timeout=_TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()

    def version(self) -> Tuple[int, int, int]:
        return parse_version(self.vboxmanage("--version"))

    def verify(self) -> None:
        if not os.access(self.path, os.X_OK):
            raise DriverUnavailable(f"VBoxManage at {self.path} is not executable")
        try:
            major, minor, patch = self.version()
        except DriverCommandError as exc:
            raise DriverUnavailable(f"VBoxManage failed its version check: {exc}") from exc
        if major not in self.supported_majors:
            raise DriverUnavailable(
                f"{type(self).__name__} does not support VirtualBox {major}.{minor}.{patch}"
            )

    def create_vm(self, name: str, os_type: str, base_folder: Path) -> None:
        self.vboxmanage(
            "createvm",
            "--name",
            name,
            "--ostype",
            os_type,
            "--basefolder",
            str(base_folder),
            "--register",
        )

    def delete_vm(self, name: str) -> None:
        self.vboxmanage("unregistervm", name, "--delete")

    def create_disk(self, path: Path, size_mb: int) -> None:
        args = [*self._create_disk_command(), "--filename", str(path), "--size", str(size_mb)]
        self.vboxmanage(*args, "--format", "VDI")

    def delete_disk(self, path: Path) -> None:
        self.vboxmanage("closemedium", "disk", str(path), "--delete")

    @abstractmethod
    def _create_disk_command(self) -> Tuple[str, ...]: ...

    @abstractmethod
    def _port_count_flag(self) -> str: ...

    def add_storage_controller(self, vm: str, name: str, bus: str) -> None:
        args = ["storagectl", vm, "--name", name, "--add", bus]
        if bus == "sata":
            args.extend([self._port_count_flag(), "1"])
        self.vboxmanage(*args)

    def attach_disk(self, vm: str, controller: str, path: Path) -> None:
        self.vboxmanage(
            "storageattach",
            vm,
            "--storagectl",
            controller,
            "--port",
            "0",
            "--device",
            "0",
            "--type",
            "hdd",
            "--medium",
            str(path),
        )

    def attach_medium(self, vm: str, path: Path) -> None:
        self.vboxmanage(
            "storageattach",
            vm,
            "--storagectl",
            IDE_CONTROLLER,
            "--port",
            "0",
            "--device",
            "1",
            "--type",
            "dvddrive",
            "--medium",
            str(path),
        )

    def detach_medium(self, vm: str) -> None:
        self.vboxmanage(
            "storageattach",
            vm,
            "--storagectl",
            IDE_CONTROLLER,
            "--port",
            "0",
            "--device",
            "1",
            "--medium",
            "none",
        )

    def suppress_messages(self) -> None:
        self.vboxmanage("setextradata", "global", "GUI/SuppressMessages", "all")

    def is_running(self, name: str) -> bool:
        try:
            output = self.vboxmanage("showvminfo", name, "--machinereadable")
        except DriverCommandError:
            return False
        for line in output.splitlines():
            if line.startswith("VMState="):
                return line.split("=", 1)[1].strip('"') in {"running", "paused", "stuck"}
        return False

    def stop(self, name: str) -> None:
        self.vboxmanage("controlvm", name, "poweroff")


class VBox4Driver(VBoxManageDriver):
    supported_majors = (4,)

    def _create_disk_command(self) -> Tuple[str, ...]:
        return ("createhd",)

    def _port_count_flag(self) -> str:
        return "--sataportcount"


class VBox5Driver(VBoxManageDriver):
    """VirtualBox 5.0 and later (createhd was replaced by createmedium)."""

    supported_majors = (5, 6, 7)

    def _create_disk_command(self) -> Tuple[str, ...]:
        return ("createmedium", "disk")

    def _port_count_flag(self) -> str:
        return "--portcount"


DRIVER_VARIANTS: Tuple[Type[VBoxManageDriver], ...] = (VBox4Driver, VBox5Driver)


def find_vboxmanage(explicit: Optional[str] = None) -> Path:
    """Locate the VBoxManage binary.

    Lookup order: ``explicit``, ``VBOXMANAGE_PATH``, the VirtualBox install
    directory variables, then ``PATH``.
    """
    override = explicit or get_env("VBOXMANAGE_PATH")
    if override:
        candidate = Path(override).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
        raise DriverUnavailable(f"VBoxManage not found at {candidate}")

    for var in VBOX_INSTALL_ENV_VARS:
        install_dir = get_env(var)
        if not install_dir:
            continue
        for directory in install_dir.split(os.pathsep):
            for name in VBOXMANAGE_NAMES:
                candidate = Path(directory) / name
                if candidate.is_file() and os.access(candidate, os.X_OK):
                    return candidate

    for name in VBOXMANAGE_NAMES:
        found = shutil.which(name)
        if found:
            return Path(found)
    raise DriverUnavailable("VBoxManage not found on PATH; is VirtualBox installed?")


def new_driver(vboxmanage_path: Path, cancel: Optional[threading.Event] = None) -> VBoxManageDriver:
    """Build and verify the driver variant matching the installed VirtualBox."""
    log("INFO", f"VBoxManage path: {vboxmanage_path}")
    probe = VBox5Driver(vboxmanage_path, cancel)
    try:
        major, minor, patch = probe.version()
    except DriverCommandError as exc:
        raise DriverUnavailable(f"Unable to query VBoxManage version: {exc}") from exc

    for variant in DRIVER_VARIANTS:
        if major in variant.supported_majors:
            driver = variant(vboxmanage_path, cancel)
            break
    else:
        raise DriverUnavailable(f"Unsupported VirtualBox version {major}.{minor}.{patch}")

    log("DEBUG", f"VirtualBox {major}.{minor}.{patch}; using {type(driver).__name__}")
    driver.verify()
    return driver
