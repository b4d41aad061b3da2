from enum import Enum
from typing import Protocol


class PressureLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class ResourceGuard(Protocol):
    def is_safe_to_run(self) -> bool: ...

    def pressure_level(self) -> PressureLevel: ...


class StaticResourceGuard:
    """Reports a fixed pressure level; the host app swaps in a real monitor."""

    def __init__(self, level: PressureLevel = PressureLevel.NORMAL):
        self.level = level

    def is_safe_to_run(self) -> bool:
        return self.level != PressureLevel.CRITICAL

    def pressure_level(self) -> PressureLevel:
        return self.level
