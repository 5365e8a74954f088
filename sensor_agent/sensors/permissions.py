"""Runtime permission prompts (foreground location, step counting)."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Protocol

from sensor_agent.config import PermissionSettings

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    FOREGROUND_LOCATION = "foreground_location"
    STEP_COUNTING = "step_counting"


class PermissionGate(Protocol):
    async def request(self, permission: Permission) -> bool:
        ...

    def is_granted(self, permission: Permission) -> bool:
        ...


class StaticPermissionGate:
    """Answers permission prompts from settings; nothing is granted until requested."""

    def __init__(self, grants: PermissionSettings) -> None:
        self._answers: Dict[Permission, bool] = {
            Permission.FOREGROUND_LOCATION: bool(grants.location),
            Permission.STEP_COUNTING: bool(grants.step_counting),
        }
        self._granted: Dict[Permission, bool] = {}

    async def request(self, permission: Permission) -> bool:
        granted = self._answers.get(permission, False)
        self._granted[permission] = granted
        logger.info("Permission %s %s", permission.value, "granted" if granted else "denied")
        return granted

    def is_granted(self, permission: Permission) -> bool:
        return self._granted.get(permission, False)
