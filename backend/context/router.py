"""
Intent-aware context routing.

Each intent maps to an ordered plan of collectors. The collectors run
concurrently and their contributions are merged in plan order, so the
merged result never depends on which collector finished first.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from lifecycle.temperature import heat_entities

from . import collectors
from .types import (
    CollectorOutcome,
    ContextRequest,
    ContextResult,
    Contribution,
    FileInfo,
    NotAvailable,
)

logger = structlog.get_logger(__name__)

PlanStep = Callable[[], Awaitable[CollectorOutcome]]


def _plan_edit(client: Any, project_id: int, request: ContextRequest) -> List[PlanStep]:
    steps: List[PlanStep] = []
    files = request.files
    if files:
        steps += [
            lambda: collectors.collect_file_info(client, project_id, files),
            lambda: collectors.collect_test_history(client, project_id, files),
            lambda: collectors.collect_cochangers(client, project_id, files),
        ]
    steps += [
        lambda: collectors.collect_contradictions(client, project_id),
        lambda: collectors.collect_failed_decisions(client, project_id),
    ]
    if files:
        steps += [
            lambda: collectors.collect_file_decisions(client, project_id, files),
            lambda: collectors.collect_file_learnings(client, project_id, files),
            lambda: collectors.collect_file_issues(client, project_id, files),
        ]
    return steps


def _plan_read(client: Any, project_id: int, request: ContextRequest) -> List[PlanStep]:
    steps: List[PlanStep] = []
    files = request.files
    if files:
        steps.append(lambda: collectors.collect_file_info(client, project_id, files))
    if request.query:
        query = request.query
        steps.append(lambda: collectors.collect_query_results(client, project_id, query))
    elif files:
        steps += [
            lambda: collectors.collect_file_decisions(client, project_id, files),
            lambda: collectors.collect_file_learnings(client, project_id, files),
        ]
    return steps


def _plan_debug(client: Any, project_id: int, request: ContextRequest) -> List[PlanStep]:
    steps: List[PlanStep] = []
    text = request.query or request.task
    files = request.files
    if request.query:
        query = request.query
        steps.append(lambda: collectors.collect_error_fixes(client, project_id, query))
    steps.append(lambda: collectors.collect_recent_errors(client, project_id))
    if text:
        steps.append(lambda: collectors.collect_query_results(client, project_id, text))
    if files:
        steps += [
            lambda: collectors.collect_file_info(client, project_id, files),
            lambda: collectors.collect_test_history(client, project_id, files),
        ]
    return steps


def _plan_explore(client: Any, project_id: int, request: ContextRequest) -> List[PlanStep]:
    steps: List[PlanStep] = []
    query_text = request.query or request.task
    task_text = request.task or request.query
    if query_text:
        steps.append(lambda: collectors.collect_query_results(client, project_id, query_text))
    if task_text:
        steps.append(lambda: collectors.collect_suggested_files(client, project_id, task_text))
    return steps


def _plan_plan(client: Any, project_id: int, request: ContextRequest) -> List[PlanStep]:
    steps: List[PlanStep] = [
        lambda: collectors.collect_contradictions(client, project_id),
        lambda: collectors.collect_failed_decisions(client, project_id),
    ]
    text = request.task or request.query
    files = request.files
    if text:
        steps += [
            lambda: collectors.collect_query_results(client, project_id, text),
            lambda: collectors.collect_suggested_files(client, project_id, text),
        ]
    if files:
        steps += [
            lambda: collectors.collect_file_info(client, project_id, files),
            lambda: collectors.collect_cochangers(client, project_id, files),
        ]
    steps.append(lambda: collectors.collect_open_issues(client, project_id))
    return steps


_PLANS: Dict[str, Callable[[Any, int, ContextRequest], List[PlanStep]]] = {
    "edit": _plan_edit,
    "read": _plan_read,
    "debug": _plan_debug,
    "explore": _plan_explore,
    "plan": _plan_plan,
}


def build_plan(client: Any, project_id: int, request: ContextRequest) -> List[PlanStep]:
    steps = _PLANS[request.intent](client, project_id, request)
    keywords = collectors.request_keywords(request)
    steps.append(lambda: collectors.collect_strategies(client, project_id, keywords))
    return steps


def _fold_contribution(
    result: ContextResult,
    outcome: Contribution,
    seen_titles: set,
    files_by_path: Dict[str, FileInfo],
) -> None:
    result.warnings.extend(outcome.warnings)
    for item in outcome.context:
        if item.title in seen_titles:
            continue
        seen_titles.add(item.title)
        result.context.append(item)
    for info in outcome.files:
        if info.path in files_by_path:
            continue
        files_by_path[info.path] = info
        result.files.append(info)


def merge_outcomes(result: ContextResult, outcomes: Sequence[CollectorOutcome]) -> List[Tuple[str, int]]:
    """Fold collector outcomes into ``result`` in order; returns heat targets."""
    seen_titles = set()
    files_by_path: Dict[str, FileInfo] = {}
    annotations = []
    heat_targets: List[Tuple[str, int]] = []

    for outcome in outcomes:
        if outcome.source not in result.meta.sources_queried:
            result.meta.sources_queried.append(outcome.source)
        if isinstance(outcome, NotAvailable):
            if outcome.source not in result.meta.sources_unavailable:
                result.meta.sources_unavailable.append(outcome.source)
        else:
            _fold_contribution(result, outcome, seen_titles, files_by_path)
            annotations.extend(outcome.annotations)
            for target in outcome.heat_targets:
                if target not in heat_targets:
                    heat_targets.append(target)

    # Annotations apply only to files some collector actually reported.
    for annotation in annotations:
        info = files_by_path.get(annotation.path)
        if info is None:
            continue
        if annotation.historical_failure_rate is not None:
            info.historical_failure_rate = annotation.historical_failure_rate
        if annotation.cochangers:
            info.cochangers = list(annotation.cochangers)
    return heat_targets


async def route_context(
    client: Any,
    project_id: int,
    request: ContextRequest,
    *,
    heating_queue: Optional[Any] = None,
    heat: bool = True,
) -> ContextResult:
    """Run the collectors for ``request.intent`` and compose their output."""
    result = ContextResult.empty(request.intent)
    plan = build_plan(client, project_id, request)
    outcomes = await asyncio.gather(*(step() for step in plan))
    heat_targets = merge_outcomes(result, outcomes)

    if heat and heat_targets:
        if heating_queue is not None:
            await heating_queue.enqueue(project_id, heat_targets)
        else:
            try:
                await heat_entities(client, project_id, heat_targets)
            except SQLAlchemyError as exc:
                logger.warning("context_heating_failed", error=str(exc))

    logger.debug(
        "context_routed",
        project_id=project_id,
        intent=request.intent,
        sources=result.meta.sources_queried,
        unavailable=result.meta.sources_unavailable,
    )
    result.advance("composed")
    return result
