from .sqlite_client import (
    Base,
    Consolidation,
    ContradictionAlert,
    Decision,
    ErrorEvent,
    ErrorFixPair,
    FileCorrelation,
    FileRecord,
    Issue,
    Learning,
    Project,
    SQLiteClient,
    StrategyCatalog,
    TestResult,
    WorkSession,
)
from .repositories import ENTITY_SPECS, EntityRepository, EntitySpec

__all__ = [
    "Base",
    "Consolidation",
    "ContradictionAlert",
    "Decision",
    "ENTITY_SPECS",
    "EntityRepository",
    "EntitySpec",
    "ErrorEvent",
    "ErrorFixPair",
    "FileCorrelation",
    "FileRecord",
    "Issue",
    "Learning",
    "Project",
    "SQLiteClient",
    "StrategyCatalog",
    "TestResult",
    "WorkSession",
]
