"""Memory management tools: forget and stats."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from memoria.tools._helpers import _parse_id

if TYPE_CHECKING:
    from memoria.memory.system import MemorySystem

logger = logging.getLogger(__name__)


async def memory_forget(system: MemorySystem, memory_id: str) -> dict[str, Any]:
    """Delete a memory together with its embedding, connections and feedback."""
    deleted = await system.delete_memory(_parse_id(memory_id))
    if not deleted:
        return {"deleted": False, "error": "Memory not found"}
    return {"deleted": True}


async def memory_stats(system: MemorySystem) -> dict[str, Any]:
    return await system.stats()
