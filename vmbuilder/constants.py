"""Global constants and path configuration for vmbuilder."""

from __future__ import annotations

import os
import re
from pathlib import Path

BUILDER_ID = "vmbuilder.virtualbox"

DEFAULT_GUEST_OS_TYPE = "Other"
DEFAULT_OUTPUT_DIRECTORY = "virtualbox"
DEFAULT_VM_NAME = "packer"
DEFAULT_DISK_SIZE_MB = 40000
DEFAULT_DOWNLOAD_RETRIES = 3
DEFAULT_CHECKSUM_TYPE = "md5"

SUPPORTED_SCHEMES = ("file", "http", "https")

# Hex digest length per supported checksum type
CHECKSUM_LENGTHS = {
    "md5": 32,
    "sha1": 40,
    "sha256": 64,
    "sha512": 128,
}
HEX_RE = re.compile(r"^[0-9a-f]+$")

# CACHE_DIR holds downloaded installation media shared by every build.
_CACHE_DIR = os.environ.get("VMBUILDER_CACHE_DIR")
if _CACHE_DIR:
    CACHE_DIR = Path(_CACHE_DIR)
else:
    CACHE_DIR = Path.home() / ".cache" / "vmbuilder"

ENV_PREFIX = "VMBUILDER_"
TRUTHY = {"1", "true", "yes", "on"}

VBOXMANAGE_NAMES = ("VBoxManage", "vboxmanage", "VBoxManage.exe")
VBOX_INSTALL_ENV_VARS = ("VBOX_INSTALL_PATH", "VBOX_MSI_INSTALL_PATH")
VBOXMANAGE_ERROR_SIGNATURE = "VBoxManage: error:"
VBOX_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)")

SATA_CONTROLLER = "SATA Controller"
IDE_CONTROLLER = "IDE Controller"

HOOK_STEP_COMPLETE = "vmbuilder_step_complete"

DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB
DOWNLOAD_TIMEOUT = 60
USER_AGENT = "vmbuilder/1.0"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
