"""
Budgeted rendering of a composed context result.

Sections are written in a fixed priority order (warnings, strategies,
knowledge context, files). Lines are atomic: the first line that would
overflow the token budget ends the output, so a lower-priority section
is never written ahead of a truncated higher-priority one.
"""

import math
from typing import List, Optional

from config import DEFAULT_TOKEN_BUDGET

from .types import SEVERITY_ORDER, ContextResult, FileInfo, KnowledgeItem

NO_CONTEXT_SENTINEL = "No relevant context found."

MAX_WARNINGS = 10
MAX_STRATEGIES = 5
MAX_DECISIONS = 5
MAX_LEARNINGS = 5
MAX_ERROR_FIXES = 3
MAX_ISSUES = 3
MAX_FILES = 15

_SEVERITY_ICONS = {"critical": "!!", "warning": "!", "info": "-"}


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token."""
    return math.ceil(len(text) / 4)


def _line_cost(line: str) -> int:
    # Each line carries its trailing newline.
    return math.ceil((len(line) + 1) / 4)


class _BudgetWriter:
    def __init__(self, budget: int):
        self.budget = budget
        self.used = 0
        self.sections: List[List[str]] = []
        self.exhausted = False

    def write_section(self, header: str, lines: List[str]) -> None:
        if self.exhausted or not lines:
            return
        separator = 1 if self.sections else 0
        opening = separator + _line_cost(header) + _line_cost(lines[0])
        if self.used + opening > self.budget:
            self.exhausted = True
            return
        self.used += separator + _line_cost(header)
        section = [header]
        for line in lines:
            cost = _line_cost(line)
            if self.used + cost > self.budget:
                self.exhausted = True
                break
            section.append(line)
            self.used += cost
        self.sections.append(section)

    def render(self) -> str:
        return "\n\n".join("\n".join(section) for section in self.sections)


def _warning_lines(result: ContextResult) -> List[str]:
    ordered = sorted(
        enumerate(result.warnings),
        key=lambda pair: (SEVERITY_ORDER.get(pair[1].severity, len(SEVERITY_ORDER)), pair[0]),
    )
    lines = []
    for _index, warning in ordered[:MAX_WARNINGS]:
        icon = _SEVERITY_ICONS.get(warning.severity, "-")
        suffix = f" [{warning.file}]" if warning.file else ""
        lines.append(f"  {icon} {warning.message}{suffix}")
    return lines


def _of_type(items: List[KnowledgeItem], kind: str, limit: int) -> List[KnowledgeItem]:
    return [item for item in items if item.type == kind][:limit]


def _strategy_lines(result: ContextResult) -> List[str]:
    lines = []
    for item in _of_type(result.context, "strategy", MAX_STRATEGIES):
        rate = round((item.confidence or 0) * 10)
        lines.append(f"  ST[{item.title}|{(item.content or '')[:50]}|rate:{rate}%]")
    return lines


def _decision_line(item: KnowledgeItem) -> str:
    status = f" [{item.status}]" if item.status and item.status != "pending" else ""
    return f"  D[{item.title[:50]}{status}]"


def _context_lines(result: ContextResult) -> List[str]:
    lines = [_decision_line(item) for item in _of_type(result.context, "decision", MAX_DECISIONS)]
    for item in _of_type(result.context, "learning", MAX_LEARNINGS):
        confidence = item.confidence if item.confidence is not None else "?"
        lines.append(f"  K[{item.title[:50]}|conf:{confidence}]")
    for item in _of_type(result.context, "error_fix", MAX_ERROR_FIXES):
        lines.append(f"  EF[{item.title[:30]}|fix:{(item.content or '')[:50]}]")
    for item in _of_type(result.context, "issue", MAX_ISSUES):
        severity = item.confidence if item.confidence is not None else "?"
        lines.append(f"  I[sev:{severity}|{item.title[:40]}]")
    return lines


def _file_line(info: FileInfo) -> str:
    parts = [info.path]
    if info.fragility >= 3:
        parts.append(f"frag:{info.fragility}")
    if info.purpose:
        parts.append(info.purpose[:40])
    if info.historical_failure_rate:
        parts.append(f"fail:{round(info.historical_failure_rate * 100)}%")
    if info.cochangers:
        parts.append(f"co:{','.join(info.cochangers[:3])}")
    return f"  F[{'|'.join(parts)}]"


def _file_lines(result: ContextResult) -> List[str]:
    ordered = sorted(result.files, key=lambda info: (-info.fragility, info.path))
    return [_file_line(info) for info in ordered[:MAX_FILES]]


def format_context(result: ContextResult, budget: Optional[int] = None) -> str:
    """
    Render ``result`` within ``budget`` tokens.

    Deterministic for identical input. Returns the no-context sentinel when
    nothing fits or nothing was collected. The sentinel is not charged to
    the budget: ``tokens_used`` stays 0 and a budget below the sentinel's
    own estimate (7 tokens) still gets the sentinel back.
    """
    limit = DEFAULT_TOKEN_BUDGET if budget is None else int(budget)
    if limit < 0:
        raise ValueError("budget must be non-negative")

    writer = _BudgetWriter(limit)
    writer.write_section("WARNINGS:", _warning_lines(result))
    writer.write_section("STRATEGIES:", _strategy_lines(result))
    writer.write_section("CONTEXT:", _context_lines(result))
    writer.write_section("FILES:", _file_lines(result))

    output = writer.render()
    result.meta.tokens_used = writer.used
    result.advance("formatted")
    return output or NO_CONTEXT_SENTINEL
