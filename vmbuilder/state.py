"""Shared state threaded through the build steps."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional, Tuple

from vmbuilder.cache import FileCache
from vmbuilder.driver import Driver
from vmbuilder.exceptions import BuildError, StepFailure
from vmbuilder.models import BuildConfig
from vmbuilder.ui import Hook, Ui


@dataclass
class BuildState:
    config: BuildConfig
    driver: Driver
    cache: FileCache
    ui: Ui
    hook: Hook
    cancel: threading.Event = field(default_factory=threading.Event)

    # Step outputs; each is owned by the first step that writes it.
    iso_path: Optional[Path] = None
    output_dir: Optional[Path] = None
    vm_name: Optional[str] = None
    disk_path: Optional[Path] = None
    disk_attached: bool = False
    iso_attached: bool = False

    error: Optional[StepFailure] = None
    cancelled: bool = False
    halted: bool = False
    _owners: Dict[str, str] = field(default_factory=dict, repr=False)

    OUTPUT_FIELDS: ClassVar[Tuple[str, ...]] = (
        "iso_path",
        "output_dir",
        "vm_name",
        "disk_path",
        "disk_attached",
        "iso_attached",
    )

    def put(self, step: str, name: str, value: Any) -> None:
        """Record a step output, refusing writes to another step's field."""
        if name not in self.OUTPUT_FIELDS:
            raise KeyError(f"Unknown build state field: {name}")
        owner = self._owners.get(name)
        if owner is not None and owner != step:
            raise BuildError(f"Build state field '{name}' belongs to step '{owner}'; '{step}' cannot overwrite it")
        self._owners[name] = step
        setattr(self, name, value)

    def owner(self, name: str) -> Optional[str]:
        return self._owners.get(name)

    @property
    def interrupted(self) -> bool:
        """True when the run stopped early, by failure or cancellation."""
        return self.halted or self.cancelled
