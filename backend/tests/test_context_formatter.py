import pytest

from context import (
    NO_CONTEXT_SENTINEL,
    ContextResult,
    ContextWarning,
    FileInfo,
    KnowledgeItem,
    estimate_tokens,
    format_context,
)


def _populated_result() -> ContextResult:
    result = ContextResult.empty("edit")
    result.warnings = [
        ContextWarning(type="test_failure", severity="info", message="Flaky in CI"),
        ContextWarning(
            type="fragility",
            severity="critical",
            message="Fragility 9/10 - touches auth",
            file="src/auth.py",
        ),
        ContextWarning(type="failed_decision", severity="warning", message="Drop the ORM"),
    ]
    result.context = [
        KnowledgeItem(type="strategy", title="Bisect", content="Binary search commits", confidence=8),
        KnowledgeItem(type="decision", title="Use WAL", content="...", confidence=7, status="pending"),
        KnowledgeItem(type="decision", title="Drop the ORM", content="...", status="failed"),
        KnowledgeItem(type="learning", title="Session tokens rotate", content="...", confidence=6),
        KnowledgeItem(type="error_fix", title="ImportError: yaml", content="pip install pyyaml"),
        KnowledgeItem(type="issue", title="Login loop", content="...", confidence=8),
    ]
    result.files = [
        FileInfo(path="src/util.py", fragility=1),
        FileInfo(
            path="src/auth.py",
            fragility=9,
            purpose="Session handling",
            cochangers=["src/session.py", "src/tokens.py"],
            historical_failure_rate=0.25,
        ),
    ]
    return result


def test_empty_result_renders_sentinel() -> None:
    result = ContextResult.empty("read")
    assert format_context(result) == NO_CONTEXT_SENTINEL
    assert result.meta.tokens_used == 0
    assert result.stage == "formatted"


def test_sections_render_in_priority_order() -> None:
    text = format_context(_populated_result(), 2000)
    sections = text.split("\n\n")
    assert [section.splitlines()[0] for section in sections] == [
        "WARNINGS:",
        "STRATEGIES:",
        "CONTEXT:",
        "FILES:",
    ]
    warnings = sections[0].splitlines()[1:]
    assert warnings == [
        "  !! Fragility 9/10 - touches auth [src/auth.py]",
        "  ! Drop the ORM",
        "  - Flaky in CI",
    ]
    assert sections[1].splitlines()[1] == "  ST[Bisect|Binary search commits|rate:80%]"
    assert sections[2].splitlines()[1:] == [
        "  D[Use WAL]",
        "  D[Drop the ORM [failed]]",
        "  K[Session tokens rotate|conf:6]",
        "  EF[ImportError: yaml|fix:pip install pyyaml]",
        "  I[sev:8|Login loop]",
    ]
    assert sections[3].splitlines()[1:] == [
        "  F[src/auth.py|frag:9|Session handling|fail:25%|co:src/session.py,src/tokens.py]",
        "  F[src/util.py]",
    ]


@pytest.mark.parametrize("budget", [0, 5, 13, 14, 20, 37, 50, 80, 120, 400])
def test_output_never_exceeds_budget(budget: int) -> None:
    result = _populated_result()
    text = format_context(result, budget)
    if text == NO_CONTEXT_SENTINEL:
        # Only budgets too small for the first header and line fall back.
        assert budget < 20
        assert result.meta.tokens_used == 0
        return
    assert estimate_tokens(text) <= budget
    assert result.meta.tokens_used <= budget
    assert text.startswith("WARNINGS:\n  !! Fragility 9/10")


def test_small_budget_keeps_critical_warning_and_drops_later_sections() -> None:
    text = format_context(_populated_result(), 20)
    assert text.startswith("WARNINGS:\n  !! Fragility 9/10 - touches auth [src/auth.py]")
    assert "FILES:" not in text
    assert "CONTEXT:" not in text


@pytest.mark.parametrize("budget", range(0, 7))
def test_sentinel_is_returned_uncharged_below_its_own_size(budget: int) -> None:
    result = _populated_result()
    assert format_context(result, budget) == NO_CONTEXT_SENTINEL
    assert estimate_tokens(NO_CONTEXT_SENTINEL) == 7
    assert estimate_tokens(NO_CONTEXT_SENTINEL) > budget
    assert result.meta.tokens_used == 0


def test_items_are_never_truncated() -> None:
    full = format_context(_populated_result(), 2000).splitlines()
    for budget in range(0, 120):
        partial = format_context(_populated_result(), budget)
        if partial == NO_CONTEXT_SENTINEL:
            continue
        for line in partial.splitlines():
            assert line in full


def test_formatting_is_deterministic() -> None:
    first = format_context(_populated_result(), 60)
    second = format_context(_populated_result(), 60)
    assert first == second


def test_negative_budget_is_rejected() -> None:
    with pytest.raises(ValueError):
        format_context(_populated_result(), -1)


def test_result_cannot_move_back_to_an_earlier_stage() -> None:
    result = _populated_result()
    format_context(result, 100)
    with pytest.raises(ValueError):
        result.advance("composed")
