"""Versioned lifecycle of flow definitions.

Every change to a flow's content produces a new immutable row with the next
minor version. Only the ``is_active`` flag of an existing row ever changes,
and only through the repository's atomic supersede/activate operations, so
a flow name never has more than one active version.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, DefaultDict, Dict, Iterable, List, Mapping, Optional, Tuple

from .constants import INITIAL_FLOW_VERSION
from .contracts import utcnow
from .errors import InvalidTransition, NotFound
from .persistence import FlowDefinition, FlowRepository
from .persistence.models import DEFINITION_METADATA_FIELDS, new_id

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("nodes", "edges", "variables")


def parse_version(version: str) -> Tuple[int, int]:
    """Parse ``"major.minor"``; missing or malformed parts count as 0."""
    parts = (version or "").split(".")

    def part(index: int) -> int:
        try:
            return int(parts[index])
        except (IndexError, ValueError):
            return 0

    return part(0), part(1)


def increment_version(version: str) -> str:
    """Bump the minor component: ``"1.2" -> "1.3"``. Major never changes."""
    major, minor = parse_version(version)
    return f"{major}.{minor + 1}"


def max_version(versions: Iterable[str]) -> Optional[str]:
    """Numerically greatest version string (``"1.10"`` beats ``"1.9"``)."""
    versions = list(versions)
    if not versions:
        return None
    return max(versions, key=parse_version)


class FlowVersionManager:
    """Create, activate, roll back and administer flow definitions."""

    def __init__(self, repository: FlowRepository) -> None:
        self._repository = repository
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _next_version(self, name: str) -> str:
        rows = await self._repository.list_definitions(name)
        latest = max_version(r.version for r in rows) or INITIAL_FLOW_VERSION
        return increment_version(latest)

    async def create_version(
        self, flow_name: str, changes: Optional[Mapping[str, Any]] = None
    ) -> FlowDefinition:
        """Supersede the active version of ``flow_name`` with a new one."""
        changes = dict(changes or {})
        async with self._locks[flow_name]:
            current = await self._repository.get_active_definition(flow_name)
            if current is None:
                raise NotFound(f"No active version of flow {flow_name}")
            new_version = await self._next_version(flow_name)
            content = {f: changes[f] for f in CONTENT_FIELDS if changes.get(f) is not None}
            row = await self._supersede(current, new_version, content, changes.get("created_by"))
        logger.info(
            f"Flow {flow_name}: version {current.version} superseded by {row.version}"
        )
        return row

    async def rollback(self, version_id: str) -> FlowDefinition:
        """Clone ``version_id`` into a new active version; history stays intact."""
        target = await self._repository.get_definition(version_id)
        if target is None:
            raise NotFound(f"Flow definition {version_id} not found")
        async with self._locks[target.name]:
            new_version = await self._next_version(target.name)
            content = {f: getattr(target, f) for f in CONTENT_FIELDS}
            row = await self._supersede(target, new_version, content, None)
        logger.info(
            f"Flow {target.name}: rolled back to content of {target.version} as {row.version}"
        )
        return row

    async def _supersede(
        self,
        base: FlowDefinition,
        version: str,
        content: Dict[str, Any],
        created_by: Optional[str],
    ) -> FlowDefinition:
        now = utcnow()
        data = base.model_dump()
        data.update(content)
        data.update(
            id=new_id(),
            version=version,
            is_active=True,
            created_at=now,
            updated_at=now,
            created_by=created_by or base.created_by,
        )
        return await self._repository.insert_active_version(FlowDefinition.model_validate(data))

    async def activate(self, version_id: str) -> FlowDefinition:
        """Make ``version_id`` the single active version of its flow."""
        target = await self._repository.get_definition(version_id)
        if target is None:
            raise NotFound(f"Flow definition {version_id} not found")
        async with self._locks[target.name]:
            row = await self._repository.activate_definition(version_id)
        logger.info(f"Flow {row.name}: version {row.version} activated")
        return row

    # ------------------------------------------------------------------
    # Administrative CRUD
    async def create_definition(
        self, definition: FlowDefinition, activate: bool = True
    ) -> FlowDefinition:
        """Register a flow definition row.

        A brand new flow name starts at version ``1.0``; an existing name gets
        the next free minor version. The row becomes active when ``activate``
        is set and the flow has no active version yet.
        """
        async with self._locks[definition.name]:
            existing = await self._repository.list_definitions(definition.name)
            version = (
                increment_version(max_version(r.version for r in existing))
                if existing
                else INITIAL_FLOW_VERSION
            )
            row = definition.model_copy(
                update={"id": new_id(), "version": version, "is_active": False}
            )
            row = await self._repository.insert_definition(row)
            has_active = any(r.is_active for r in existing)
            if activate and not has_active:
                row = await self._repository.activate_definition(row.id)
        logger.info(f"Flow {row.name}: created version {row.version} (active={row.is_active})")
        return row

    async def get(self, definition_id: str) -> FlowDefinition:
        row = await self._repository.get_definition(definition_id)
        if row is None:
            raise NotFound(f"Flow definition {definition_id} not found")
        return row

    async def get_active(self, flow_name: str) -> Optional[FlowDefinition]:
        return await self._repository.get_active_definition(flow_name)

    async def list_definitions(self, name: Optional[str] = None) -> List[FlowDefinition]:
        return await self._repository.list_definitions(name)

    async def list_versions(self, flow_name: str) -> List[FlowDefinition]:
        """All versions of a flow, newest first."""
        rows = await self._repository.list_definitions(flow_name)
        return sorted(rows, key=lambda r: parse_version(r.version), reverse=True)

    async def update(self, definition_id: str, fields: Mapping[str, Any]) -> FlowDefinition:
        """Update descriptive fields; content changes need a new version."""
        forbidden = [k for k in fields if k not in DEFINITION_METADATA_FIELDS]
        if forbidden:
            raise InvalidTransition(
                f"Fields {', '.join(sorted(forbidden))} cannot be edited in place; "
                "create a new version instead",
                details={"fields": sorted(forbidden)},
            )
        await self.get(definition_id)
        return await self._repository.update_definition(definition_id, dict(fields))

    async def delete(self, definition_id: str) -> None:
        row = await self.get(definition_id)
        if row.is_active:
            raise InvalidTransition(
                f"Flow {row.name} version {row.version} is active and cannot be deleted"
            )
        await self._repository.delete_definition(definition_id)
        logger.info(f"Flow {row.name}: deleted version {row.version}")
