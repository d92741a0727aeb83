"""CLI entry points for vmbuilder."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import List, Optional

from vmbuilder.builder import Builder
from vmbuilder.cache import FileCache
from vmbuilder.config import load_spec_file, spec_from_env
from vmbuilder.exceptions import ConfigurationError, StepFailure
from vmbuilder.models import BuildConfig
from vmbuilder.ui import ConsoleUi
from vmbuilder.utils import log

EXIT_CANCELLED = 130


def show_config(cfg: BuildConfig) -> None:
    """Print the normalized build configuration."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")


def _install_signal_handlers(builder: Builder) -> dict:
    def _cancel(signum, frame):
        log("WARN", f"Received {signal.Signals(signum).name}; cancelling build")
        builder.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _cancel)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build VirtualBox VMs from installation ISOs")
    parser.add_argument("command", choices=("build", "validate"), help="Run the build or only validate the spec")
    parser.add_argument("spec", type=Path, help="YAML build spec")
    parser.add_argument("--vboxmanage", default=None, metavar="PATH", help="Path to VBoxManage")
    parser.add_argument("--cache-dir", type=Path, default=None, help="ISO download cache directory")
    parser.add_argument("--show-config", action="store_true", help="Print the normalized configuration")
    args = parser.parse_args(argv)

    builder = Builder(vboxmanage_path=args.vboxmanage)
    try:
        raw = spec_from_env(load_spec_file(args.spec))
        builder.prepare(raw)
    except ConfigurationError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(builder.config)
    if args.command == "validate":
        log("SUCCESS", f"Build spec {args.spec} is valid")
        return 0

    ui = ConsoleUi(prefix=builder.config.vm_name)
    cache = FileCache(args.cache_dir)
    previous = _install_signal_handlers(builder)
    try:
        artifact = builder.run(ui, cache=cache)
    except StepFailure as exc:
        log("ERROR", f"Build failed: {exc}")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        _restore_signal_handlers(previous)

    if artifact is None:
        log("WARN", "Build cancelled; no artifact produced")
        return EXIT_CANCELLED
    log("SUCCESS", f"Build finished: {artifact}")
    for path in artifact.files():
        print(f"  {path}")
    return 0
