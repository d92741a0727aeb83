"""vmbuilder package."""

__all__ = [
    "builder",
    "cache",
    "cli",
    "config",
    "constants",
    "driver",
    "exceptions",
    "models",
    "runner",
    "state",
    "steps",
    "ui",
    "utils",
]
