"""Provisioning steps executed by the builder, in pipeline order."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote, urlsplit

from vmbuilder.cache import cache_key
from vmbuilder.constants import IDE_CONTROLLER, SATA_CONTROLLER
from vmbuilder.exceptions import ChecksumMismatch, DriverCommandError, StepFailure
from vmbuilder.runner import Step, StepAction
from vmbuilder.state import BuildState
from vmbuilder.ui import Ui
from vmbuilder.utils import download_file_with_retry, ensure_directory, file_digest, log

_PROGRESS_UNKNOWN_SIZE_STEP = 64 * 1024 * 1024


class _ProgressReporter:
    """Report download progress to the UI every 10 % (or 64 MiB)."""

    def __init__(self, ui: Ui) -> None:
        self.ui = ui
        self._last_mark = 0

    def __call__(self, downloaded: int, total: Optional[int]) -> None:
        downloaded_mb = downloaded / (1024 * 1024)
        if total:
            mark = downloaded * 10 // total
            if mark > self._last_mark:
                self._last_mark = mark
                self.ui.message(f"Download progress: {mark * 10}% ({downloaded_mb:.1f} MiB)")
        else:
            mark = downloaded // _PROGRESS_UNKNOWN_SIZE_STEP
            if mark > self._last_mark:
                self._last_mark = mark
                self.ui.message(f"Downloaded {downloaded_mb:.1f} MiB")


def _driver_failure(step: str, action: str, exc: DriverCommandError) -> StepFailure:
    return StepFailure(step, f"Error {action}: {exc}", cause=exc)


class DownloadISOStep(Step):
    name = "download_iso"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        parsed = urlsplit(cfg.iso_url)

        if parsed.scheme == "file":
            path = Path(unquote(parsed.path))
            if not path.is_file():
                raise StepFailure(self.name, f"Local ISO {path} no longer exists")
            if cfg.iso_verify_local:
                state.ui.say(f"Verifying checksum of local ISO {path}...")
                actual = file_digest(path, cfg.iso_checksum_type, state.cancel)
                if actual != cfg.iso_checksum:
                    raise ChecksumMismatch(self.name, cfg.iso_checksum, actual)
            else:
                log("WARN", f"Using local ISO {path} without checksum verification (set iso_verify_local to check it)")
            state.put(self.name, "iso_path", path)
            return StepAction.CONTINUE

        key = cache_key(cfg.iso_url, cfg.iso_checksum_type, cfg.iso_checksum)
        state.ui.say(f"Downloading or copying ISO: {cfg.iso_url}")
        with state.cache.lock(key, state.cancel) as target:
            if target.is_file():
                state.ui.message(f"Using cached ISO {target}")
            else:
                actual = download_file_with_retry(
                    cfg.iso_url,
                    state.cache.partial_path(key),
                    cfg.iso_checksum_type,
                    retries=cfg.download_retries,
                    cancel=state.cancel,
                    progress=_ProgressReporter(state.ui),
                )
                if actual != cfg.iso_checksum:
                    state.cache.discard(key)
                    raise ChecksumMismatch(self.name, cfg.iso_checksum, actual)
                target = state.cache.commit(key)
                log("SUCCESS", f"ISO verified ({cfg.iso_checksum_type}) and cached at {target}")

        state.put(self.name, "iso_path", target)
        return StepAction.CONTINUE


class PrepareOutputDirStep(Step):
    name = "prepare_output_dir"

    def run(self, state: BuildState) -> StepAction:
        path = Path(state.config.output_directory)
        if path.exists():
            if not path.is_dir():
                raise StepFailure(self.name, f"Output path {path} exists and is not a directory")
            if any(path.iterdir()):
                raise StepFailure(self.name, f"Output directory {path} already exists and is not empty")
        ensure_directory(path)
        state.put(self.name, "output_dir", path.resolve())
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not state.interrupted or state.owner("output_dir") != self.name:
            return
        state.ui.say("Deleting output directory...")
        shutil.rmtree(state.output_dir, ignore_errors=False)


class SuppressMessagesStep(Step):
    name = "suppress_messages"

    def run(self, state: BuildState) -> StepAction:
        log("DEBUG", "Suppressing annoying messages in VirtualBox")
        try:
            state.driver.suppress_messages()
        except DriverCommandError as exc:
            raise _driver_failure(self.name, "configuring VirtualBox to suppress messages", exc)
        return StepAction.CONTINUE


class CreateVMStep(Step):
    name = "create_vm"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        state.ui.say(f"Creating virtual machine {cfg.vm_name}...")
        try:
            state.driver.create_vm(cfg.vm_name, cfg.guest_os_type, state.output_dir)
        except DriverCommandError as exc:
            raise _driver_failure(self.name, "creating VM", exc)
        state.put(self.name, "vm_name", cfg.vm_name)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not state.interrupted or state.owner("vm_name") != self.name:
            return
        state.ui.say(f"Unregistering and deleting virtual machine {state.vm_name}...")
        if state.driver.is_running(state.vm_name):
            state.driver.stop(state.vm_name)
        state.driver.delete_vm(state.vm_name)


class CreateDiskStep(Step):
    name = "create_disk"

    def run(self, state: BuildState) -> StepAction:
        cfg = state.config
        disk_path = state.output_dir / f"{state.vm_name}.vdi"
        state.ui.say(f"Creating hard drive {disk_path} ({cfg.disk_size} MiB)...")
        try:
            state.driver.create_disk(disk_path, cfg.disk_size)
            state.put(self.name, "disk_path", disk_path)
            state.driver.add_storage_controller(state.vm_name, SATA_CONTROLLER, "sata")
            state.driver.attach_disk(state.vm_name, SATA_CONTROLLER, disk_path)
        except DriverCommandError as exc:
            raise _driver_failure(self.name, "creating hard drive", exc)
        state.put(self.name, "disk_attached", True)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        # An attached disk goes away with `unregistervm --delete`; a loose one
        # stays in the media registry until closed.
        if not state.interrupted or state.owner("disk_path") != self.name or state.disk_attached:
            return
        state.ui.say(f"Deleting unattached hard drive {state.disk_path}...")
        state.driver.delete_disk(state.disk_path)


class AttachISOStep(Step):
    name = "attach_iso"

    def run(self, state: BuildState) -> StepAction:
        state.ui.say("Attaching ISO to the VM...")
        try:
            state.driver.add_storage_controller(state.vm_name, IDE_CONTROLLER, "ide")
            state.driver.attach_medium(state.vm_name, state.iso_path)
        except DriverCommandError as exc:
            raise _driver_failure(self.name, "attaching ISO", exc)
        state.put(self.name, "iso_attached", True)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not state.interrupted or not state.iso_attached or state.owner("iso_attached") != self.name:
            return
        log("DEBUG", f"Detaching ISO from {state.vm_name}")
        state.driver.detach_medium(state.vm_name)
        state.put(self.name, "iso_attached", False)


def build_default_steps() -> List[Step]:
    return [
        DownloadISOStep(),
        PrepareOutputDirStep(),
        SuppressMessagesStep(),
        CreateVMStep(),
        CreateDiskStep(),
        AttachISOStep(),
    ]
