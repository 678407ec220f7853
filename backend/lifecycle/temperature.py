"""
Temperature tiers, decay, heating and reheat.

Classification is a pure function of "sessions since last reference".
Storing a tier, heating recently used entities and reheating archived
ones are separate writes; classification alone never archives anything.
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

HOT_MAX_SESSIONS = 3
WARM_MAX_SESSIONS = 10
COLD_MAX_SESSIONS = 30

TIERS = ("hot", "warm", "cold", "archived")


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def classify_temperature(sessions_since_reference: int) -> str:
    """Map sessions since last reference to hot, warm, cold or archived."""
    if isinstance(sessions_since_reference, bool) or not isinstance(
        sessions_since_reference, int
    ):
        raise ValueError("sessions_since_reference must be an integer")
    if sessions_since_reference < 0:
        raise ValueError("sessions_since_reference must be non-negative")
    if sessions_since_reference <= HOT_MAX_SESSIONS:
        return "hot"
    if sessions_since_reference <= WARM_MAX_SESSIONS:
        return "warm"
    if sessions_since_reference <= COLD_MAX_SESSIONS:
        return "cold"
    return "archived"


def stored_tier(sessions_since_reference: int) -> str:
    """Tier written to the row. Archival-eligible rows stay cold until consolidated."""
    tier = classify_temperature(sessions_since_reference)
    return "cold" if tier == "archived" else tier


async def decay_temperatures(
    client: Any,
    project_id: int,
    entity_types: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Lifecycle check: recompute the stored tier of every active entity.

    Returns per-type counts of rows whose tier changed.
    """
    types = list(entity_types) if entity_types else list(client.repositories)
    changed: Dict[str, int] = {}
    async with client.session() as session:
        current = await client.session_number_in(session, project_id)
        for entity_type in types:
            repo = client.repository(entity_type)
            buckets: Dict[str, List[int]] = defaultdict(list)
            for entity_id, reference_session, temperature in await repo.tier_inputs(
                session, project_id
            ):
                tier = stored_tier(max(0, current - reference_session))
                if tier != temperature:
                    buckets[tier].append(entity_id)
            count = 0
            for tier, ids in sorted(buckets.items()):
                count += await repo.set_temperature(session, ids, tier)
            changed[entity_type] = count
    logger.debug("temperatures_decayed", project_id=project_id, changed=changed)
    return {"project_id": project_id, "current_session": current, "changed": changed}


async def heat_entities(
    client: Any,
    project_id: int,
    targets: Iterable[Tuple[str, int]],
) -> int:
    """Mark active entities hot and bump their reference to now."""
    grouped: Dict[str, List[int]] = defaultdict(list)
    for entity_type, entity_id in targets:
        if entity_id not in grouped[entity_type]:
            grouped[entity_type].append(int(entity_id))
    if not grouped:
        return 0

    now_value = _utc_now_naive()
    heated = 0
    async with client.session() as session:
        current = await client.session_number_in(session, project_id)
        for entity_type, ids in grouped.items():
            repo = client.repository(entity_type)
            heated += await repo.heat(session, ids, now_value, current)
    return heated


async def reheat(client: Any, entity_type: str, entity_id: int) -> Dict[str, Any]:
    """
    Restore one archived entity to warm.

    Idempotent: an entity that is not archived is left as it is. The
    consolidation record and the entity's batch siblings are not touched.
    """
    repo = client.repository(entity_type)
    if isinstance(entity_id, bool) or int(entity_id) <= 0:
        raise ValueError("entity id must be a positive integer")

    async with client.session() as session:
        row = await repo.get(session, int(entity_id))
        if row is None:
            raise LookupError(f"{entity_type} {entity_id} not found")
        current = await client.session_number_in(session, row.project_id)
        changed = await repo.reheat(session, row.id, _utc_now_naive(), current)
        await session.refresh(row)
        payload = repo.to_dict(row)

    if changed:
        logger.info("entity_reheated", entity_type=repo.entity_type, entity_id=entity_id)
    return {"reheated": bool(changed), "entity": payload}
