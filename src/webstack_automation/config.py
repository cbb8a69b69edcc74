from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_INVENTORY = Path("/etc/webstack/inventory.toml")
DEFAULT_FORKS = 5
DEFAULT_REBOOT_TIMEOUT = 600


@dataclass
class WebstackConfig:
    inventory: Path = DEFAULT_INVENTORY
    template_dir: Optional[Path] = None
    forks: int = DEFAULT_FORKS
    reboot_timeout: int = DEFAULT_REBOOT_TIMEOUT
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> WebstackConfig:
    if not path.exists():
        return WebstackConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})
    inventory = defaults.get("inventory", DEFAULT_INVENTORY)
    template_dir = defaults.get("template_dir")
    forks = int(defaults.get("forks", DEFAULT_FORKS))
    reboot_timeout = int(defaults.get("reboot_timeout", DEFAULT_REBOOT_TIMEOUT))
    if forks < 1:
        raise ValueError(f"{path}: forks must be at least 1")
    if reboot_timeout < 1:
        raise ValueError(f"{path}: reboot_timeout must be positive")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    return WebstackConfig(
        inventory=Path(inventory),
        template_dir=Path(template_dir) if template_dir else None,
        forks=forks,
        reboot_timeout=reboot_timeout,
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
    )
