"""Data models for vmbuilder."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List

from vmbuilder.constants import (
    BUILDER_ID,
    DEFAULT_CHECKSUM_TYPE,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_DOWNLOAD_RETRIES,
)
from vmbuilder.utils import log


@dataclass(frozen=True)
class BuildConfig:
    guest_os_type: str
    output_directory: str
    vm_name: str
    iso_url: str
    iso_checksum: str
    iso_checksum_type: str = DEFAULT_CHECKSUM_TYPE
    disk_size: int = DEFAULT_DISK_SIZE_MB  # MiB
    download_retries: int = DEFAULT_DOWNLOAD_RETRIES
    iso_verify_local: bool = False


@dataclass
class Artifact:
    """Location and identity of a finished VM."""

    output_dir: Path
    vm_name: str
    builder_id: str = BUILDER_ID

    def id(self) -> str:
        return self.vm_name

    def files(self) -> List[Path]:
        if not self.output_dir.exists():
            return []
        return sorted(p for p in self.output_dir.rglob("*") if p.is_file())

    def destroy(self) -> None:
        log("INFO", f"Removing artifact directory {self.output_dir}")
        shutil.rmtree(self.output_dir, ignore_errors=True)

    def __str__(self) -> str:
        return f"VM '{self.vm_name}' in {self.output_dir}"
