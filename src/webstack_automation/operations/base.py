from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..types import ActionResult, HostConfig
from ..executors import Executor


class Operation(ABC):
    """Shared surface for runnable provisioning actions."""

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        """Perform the operation against ``host`` using ``executor``."""

    @staticmethod
    def _coerce_bool(value: Any | None) -> bool | None:
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "yes", "on", "1"}:
                return True
            if lowered in {"false", "no", "off", "0"}:
                return False
            raise ValueError(f"Unable to interpret boolean value '{value}'")
        return bool(value)
