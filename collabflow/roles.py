"""Business role registry.

Roles are administrative configuration: the engine only reads them. A role
is resolved per message from, in order, an explicit role code, the robot's
configured role, the best keyword match against the message text, and
finally the default role.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_ROLE_CODE
from .contracts import BusinessRole
from .errors import NotFound

if TYPE_CHECKING:
    from .config import EngineConfig

logger = logging.getLogger(__name__)


class RoleMatch(BaseModel):
    """Role chosen for a message and how it was chosen."""

    role: BusinessRole
    matched_keywords: List[str] = Field(default_factory=list)
    source: Literal["explicit", "robot", "keyword", "default"] = "default"


def default_role(code: str = DEFAULT_ROLE_CODE) -> BusinessRole:
    return BusinessRole(code=code, name="Default", ai_behavior="semi_auto")


class RoleRegistry:
    """Lookup of business roles by code, robot and keyword."""

    def __init__(
        self,
        roles: Iterable[BusinessRole] = (),
        robot_roles: Optional[Dict[str, str]] = None,
        default_code: str = DEFAULT_ROLE_CODE,
    ) -> None:
        self._roles: Dict[str, BusinessRole] = {}
        self._robot_roles: Dict[str, str] = dict(robot_roles or {})
        self.default_code = default_code
        for role in roles:
            self.register(role)

    @classmethod
    def from_config(cls, config: "EngineConfig") -> "RoleRegistry":
        return cls(
            roles=config.roles,
            robot_roles=config.robot_roles,
            default_code=config.decision.default_role,
        )

    def register(self, role: BusinessRole) -> None:
        self._roles[role.code] = role

    def assign(self, robot_id: str, code: str) -> None:
        """Bind ``robot_id`` to the role ``code``."""
        self.get(code)
        self._robot_roles[robot_id] = code

    def get(self, code: str) -> BusinessRole:
        role = self._roles.get(code)
        if role is None:
            raise NotFound(f"Business role {code} not found")
        return role

    def list(self) -> List[BusinessRole]:
        return list(self._roles.values())

    @property
    def default(self) -> BusinessRole:
        return self._roles.get(self.default_code) or default_role(self.default_code)

    @staticmethod
    def matched_keywords(role: BusinessRole, text: str) -> List[str]:
        lowered = text.lower()
        return [k for k in dict.fromkeys(role.keywords) if k and k.lower() in lowered]

    def resolve(
        self, robot_id: Optional[str], text: str, explicit_code: Optional[str] = None
    ) -> RoleMatch:
        if explicit_code:
            role = self.get(explicit_code)
            return RoleMatch(
                role=role,
                matched_keywords=self.matched_keywords(role, text),
                source="explicit",
            )

        robot_code = self._robot_roles.get(robot_id) if robot_id else None
        if robot_code:
            role = self._roles.get(robot_code)
            if role is not None:
                return RoleMatch(
                    role=role,
                    matched_keywords=self.matched_keywords(role, text),
                    source="robot",
                )
            logger.warning(f"Robot {robot_id} bound to unknown role {robot_code}")

        best: Optional[RoleMatch] = None
        for role in self._roles.values():
            hits = self.matched_keywords(role, text)
            if hits and (best is None or len(hits) > len(best.matched_keywords)):
                best = RoleMatch(role=role, matched_keywords=hits, source="keyword")
        if best is not None:
            return best

        return RoleMatch(role=self.default, source="default")
