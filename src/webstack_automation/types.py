from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class OsFamily(str, Enum):
    DEBIAN = "debian"
    REDHAT = "redhat"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["OsFamily"]:
        if value is None:
            return None
        lowered = str(value).strip().lower()
        for member in cls:
            if member.value == lowered:
                return member
        raise ValueError(f"Unknown os_family '{value}'")


class Handler(str, Enum):
    REBOOT = "reboot"
    RELOAD_FIREWALL = "reload_firewall"


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    user: str = "root"
    port: int = 22
    key_path: Optional[str] = None
    os_family: Optional[OsFamily] = None
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class Inventory:
    hosts: dict[str, HostConfig]
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionSpec:
    type: str
    data: dict[str, Any]


@dataclass
class Step:
    name: str
    action: ActionSpec
    guard: Optional[Callable[[Any], bool]] = None
    notifies: Optional[Handler] = None


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    skipped: bool = False
    resource: Optional[str] = None
    step: Optional[str] = None


@dataclass
class HostReport:
    host: str
    results: list[ActionResult] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None
