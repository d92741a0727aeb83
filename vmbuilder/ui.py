"""Progress reporting and lifecycle hooks for vmbuilder."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from vmbuilder.utils import log


class Ui(Protocol):
    def say(self, message: str) -> None: ...

    def message(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class ConsoleUi:
    """Write build progress to the console through ``log``."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = f"{prefix}: " if prefix else ""

    def say(self, message: str) -> None:
        log("INFO", f"{self.prefix}{message}")

    def message(self, message: str) -> None:
        log("INFO", f"{self.prefix}    {message}")

    def error(self, message: str) -> None:
        log("ERROR", f"{self.prefix}{message}")


HookFunc = Callable[[str, Ui, Any], None]


class Hook(Protocol):
    def run(self, name: str, ui: Ui, data: Any) -> None: ...


class NoopHook:
    def run(self, name: str, ui: Ui, data: Any) -> None:
        return None


class DispatchHook:
    """Route a hook call to every callable registered under its name."""

    def __init__(self, mapping: Optional[Dict[str, List[HookFunc]]] = None) -> None:
        self.mapping: Dict[str, List[HookFunc]] = {k: list(v) for k, v in (mapping or {}).items()}

    def register(self, name: str, func: HookFunc) -> None:
        self.mapping.setdefault(name, []).append(func)

    def run(self, name: str, ui: Ui, data: Any) -> None:
        for func in self.mapping.get(name, []):
            func(name, ui, data)
