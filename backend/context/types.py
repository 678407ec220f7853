from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from config import INTENTS

SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

STAGES = ("collecting", "composed", "formatted")


@dataclass
class ContextWarning:
    type: str
    severity: str
    message: str
    file: Optional[str] = None


@dataclass
class KnowledgeItem:
    # decision | learning | error_fix | issue | strategy
    type: str
    title: str
    content: str
    confidence: Optional[float] = None
    status: Optional[str] = None


@dataclass
class FileInfo:
    path: str
    fragility: int
    purpose: Optional[str] = None
    cochangers: List[str] = field(default_factory=list)
    historical_failure_rate: Optional[float] = None


@dataclass
class FileAnnotation:
    """Extra facts about a file that another collector contributes."""

    path: str
    historical_failure_rate: Optional[float] = None
    cochangers: Optional[List[str]] = None


@dataclass
class ContextMeta:
    intent: str
    tokens_used: int = 0
    sources_queried: List[str] = field(default_factory=list)
    sources_unavailable: List[str] = field(default_factory=list)


@dataclass
class ContextResult:
    warnings: List[ContextWarning]
    context: List[KnowledgeItem]
    files: List[FileInfo]
    meta: ContextMeta
    stage: str = "collecting"

    @classmethod
    def empty(cls, intent: str) -> "ContextResult":
        return cls(warnings=[], context=[], files=[], meta=ContextMeta(intent=intent))

    def advance(self, stage: str) -> None:
        if STAGES.index(stage) < STAGES.index(self.stage):
            raise ValueError(f"cannot move context result from {self.stage} to {stage}")
        self.stage = stage

    def to_dict(self) -> dict:
        return {
            "warnings": [vars(item) for item in self.warnings],
            "context": [vars(item) for item in self.context],
            "files": [vars(item) for item in self.files],
            "meta": vars(self.meta),
        }


@dataclass
class ContextRequest:
    intent: str
    files: List[str] = field(default_factory=list)
    query: Optional[str] = None
    task: Optional[str] = None

    def __post_init__(self) -> None:
        self.intent = (self.intent or "").strip().lower()
        if self.intent not in INTENTS:
            raise ValueError(
                f"Invalid intent '{self.intent}'. Expected one of: {', '.join(INTENTS)}."
            )
        cleaned = []
        for item in self.files or []:
            if not isinstance(item, str):
                raise ValueError("files must be a list of strings")
            value = item.strip()
            if value and value not in cleaned:
                cleaned.append(value)
        self.files = cleaned
        self.query = (self.query or "").strip() or None
        self.task = (self.task or "").strip() or None


@dataclass
class Contribution:
    source: str
    warnings: List[ContextWarning] = field(default_factory=list)
    context: List[KnowledgeItem] = field(default_factory=list)
    files: List[FileInfo] = field(default_factory=list)
    annotations: List[FileAnnotation] = field(default_factory=list)
    heat_targets: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class NotAvailable:
    source: str
    reason: str


CollectorOutcome = Union[Contribution, NotAvailable]
