"""VirtualBox ISO builder: validation, step wiring and cancellation."""

from __future__ import annotations

import threading
from typing import Any, Mapping, Optional

from vmbuilder.cache import FileCache
from vmbuilder.config import prepare_config
from vmbuilder.driver import Driver, find_vboxmanage, new_driver
from vmbuilder.exceptions import BuildError, ConfigurationError, DriverUnavailable
from vmbuilder.models import Artifact, BuildConfig
from vmbuilder.runner import BasicRunner
from vmbuilder.state import BuildState
from vmbuilder.steps import build_default_steps
from vmbuilder.ui import Hook, NoopHook, Ui
from vmbuilder.utils import log


class Builder:
    """Builds one VirtualBox VM from an installation ISO.

    A builder is single-use: ``prepare`` once, ``run`` once. ``cancel`` may be
    called from another thread or a signal handler at any point.
    """

    def __init__(self, vboxmanage_path: Optional[str] = None) -> None:
        self.config: Optional[BuildConfig] = None
        self.driver: Optional[Driver] = None
        self.runner: Optional[BasicRunner] = None
        self._vboxmanage_path = vboxmanage_path
        self._cancel = threading.Event()

    def prepare(self, raw: Mapping[str, Any]) -> None:
        config, errors = prepare_config(raw)

        try:
            vboxmanage = find_vboxmanage(self._vboxmanage_path)
            self.driver = new_driver(vboxmanage, self._cancel)
        except DriverUnavailable as exc:
            errors.append(f"Failed creating VirtualBox driver: {exc}")

        if errors:
            raise ConfigurationError(errors)
        self.config = config

    def run(self, ui: Ui, hook: Optional[Hook] = None, cache: Optional[FileCache] = None) -> Optional[Artifact]:
        """Execute the build; returns None when cancelled, raises StepFailure on failure."""
        if self.config is None or self.driver is None:
            raise BuildError("Builder.prepare() must succeed before run()")

        state = BuildState(
            config=self.config,
            driver=self.driver,
            cache=cache if cache is not None else FileCache(),
            ui=ui,
            hook=hook if hook is not None else NoopHook(),
            cancel=self._cancel,
        )
        self.runner = BasicRunner(build_default_steps())
        self.runner.run(state)

        if state.cancelled:
            ui.error("Build was cancelled.")
            return None
        if state.error is not None:
            raise state.error
        return Artifact(output_dir=state.output_dir, vm_name=state.vm_name)

    def cancel(self) -> None:
        if self.runner is not None:
            self.runner.cancel()
        if not self._cancel.is_set():
            log("INFO", "Cancelling the build...")
            self._cancel.set()
