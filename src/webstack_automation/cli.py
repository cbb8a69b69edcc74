from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from .config import load_config
from .handlers import HandlerRunner
from .inventory import InventoryLoader
from .runner import ProvisionRunner
from .types import ActionResult, HostConfig, HostReport, Step


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"

_last_progress_len = 0
_progress_lock = threading.Lock()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision hosts into the web application stack")
    parser.add_argument(
        "inventory",
        nargs="?",
        default=None,
        type=Path,
        help="Path to an inventory file (default from config or /etc/webstack/inventory.toml)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/webstack/main.conf"),
        help="Path to webstack config file (default: /etc/webstack/main.conf)",
    )
    parser.add_argument(
        "--limit",
        action="append",
        metavar="HOST",
        help="Only provision the named host (repeatable)",
    )
    parser.add_argument("--forks", type=int, help="Number of hosts provisioned in parallel")
    parser.add_argument(
        "--template-dir",
        type=Path,
        help="Directory holding the nginx config template",
    )
    parser.add_argument("--dry-run", action="store_true", help="Calculate changes without executing")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as exc:
        print(colorize(f"Config load failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1
    _apply_aws_env(cfg)

    inventory_path = args.inventory or cfg.inventory
    try:
        inventory = InventoryLoader().load(inventory_path)
    except ValueError as exc:
        print(colorize(f"Inventory validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    template_dir = args.template_dir or cfg.template_dir or inventory_path.parent
    runner = ProvisionRunner(
        inventory,
        template_dir=template_dir,
        dry_run=args.dry_run,
        forks=args.forks or cfg.forks,
        handler_runner=HandlerRunner(reboot_timeout=cfg.reboot_timeout),
        progress_callback=print_progress,
    )
    try:
        reports = runner.run(limit=args.limit)
    except KeyError as exc:
        _clear_progress()
        print(colorize(f"Execution failed: {exc.args[0]}", Ansi.RED), file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    _clear_progress()
    for report in reports:
        for result in report.results:
            summary.add(result)
            if should_display_result(result, effective_level):
                print(format_result(result))
        summary.add_host(report)
        print(format_report(report))

    print(summary.render())
    return 0 if summary.failed_hosts == 0 else 1


def format_result(result: ActionResult) -> str:
    status = "changed" if result.changed else "ok"
    color: Optional[str] = Ansi.BLUE
    if result.failed:
        status = "failed"
        color = Ansi.RED
    elif result.skipped:
        status = "skipped"
        color = Ansi.CYAN
    elif result.changed:
        color = Ansi.GREEN
    label = result.step or result.action
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{label}{resource} {status} - {result.details}"
    return colorize(line, color)


def format_report(report: HostReport) -> str:
    if report.failed:
        return colorize(
            f"{report.host} FAILED at '{report.failed_step}': {report.error}", Ansi.RED
        )
    return colorize(f"{report.host} provisioned", Ansi.GREEN)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def print_progress(host: HostConfig, step: Step) -> None:
    global _last_progress_len
    line = f"{host.name}::{step.name} pending..."
    with _progress_lock:
        padding = " " * max(0, _last_progress_len - len(line))
        _last_progress_len = len(line)
        print(colorize(line, Ansi.YELLOW) + padding, end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    with _progress_lock:
        if _last_progress_len:
            print(" " * _last_progress_len, end="\r", flush=True)
            _last_progress_len = 0


def _apply_aws_env(cfg) -> None:
    if getattr(cfg, "aws_profile", None) and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile  # type: ignore[assignment]
    if getattr(cfg, "aws_region", None):
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region  # type: ignore[assignment]
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region  # type: ignore[assignment]


class Summary:
    def __init__(self) -> None:
        self.changed = 0
        self.ok = 0
        self.skipped = 0
        self.failures = 0
        self.failed_hosts = 0

    def add(self, result: ActionResult) -> None:
        if result.failed:
            self.failures += 1
        elif result.skipped:
            self.skipped += 1
        elif result.changed:
            self.changed += 1
        else:
            self.ok += 1

    def add_host(self, report: HostReport) -> None:
        if report.failed:
            self.failed_hosts += 1

    def render(self) -> str:
        parts = [
            f"Changed: {self.changed}",
            f"Ok: {self.ok}",
            f"Skipped: {self.skipped}",
            f"Failures: {self.failures}",
            f"Failed hosts: {self.failed_hosts}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failed_hosts == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
