from .temperature import (
    classify_temperature,
    decay_temperatures,
    heat_entities,
    reheat,
    stored_tier,
)
from .consolidation import (
    ConsolidationIntegrityError,
    build_summary,
    consolidate,
    consolidation_status,
    list_consolidations,
    run_consolidation,
    should_consolidate,
)

__all__ = [
    "ConsolidationIntegrityError",
    "build_summary",
    "classify_temperature",
    "consolidate",
    "consolidation_status",
    "decay_temperatures",
    "heat_entities",
    "list_consolidations",
    "reheat",
    "run_consolidation",
    "should_consolidate",
    "stored_tier",
]
