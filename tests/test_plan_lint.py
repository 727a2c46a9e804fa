from __future__ import annotations

from surfwright.plan import lint_errors, lint_plan


def _messages(plan: dict) -> list[tuple[str, str]]:
    return [(issue.path, issue.message) for issue in lint_errors(lint_plan(plan))]


def test_valid_plan_has_no_issues() -> None:
    plan = {
        "steps": [
            {"id": "open", "url": "https://example.test", "as": "page"},
            {"id": "count", "selector": "a", "as": "links", "assert": {"gte": {"count": 1}}},
            {"id": "clickRead", "text": "More", "timeoutMs": 5000},
        ],
        "result": {"links": "steps.links.count"},
        "require": {"truthy": ["result.links"]},
    }
    assert lint_plan(plan) == []


def test_duplicate_alias_is_an_error() -> None:
    plan = {"steps": [{"id": "open", "url": "https://a.test", "as": "a"}, {"id": "list", "as": "a"}]}
    assert _messages(plan) == [("steps[1].as", "duplicate alias: a")]


def test_alias_pattern_is_enforced() -> None:
    issues = _messages({"steps": [{"id": "list", "as": "9lives"}]})
    assert issues[0][0] == "steps[0].as"
    assert issues[0][1].startswith("alias must match")


def test_unknown_step_id_and_missing_fields() -> None:
    issues = _messages(
        {
            "steps": [
                {"id": "teleport"},
                {"id": "open"},
                {"id": "click"},
                {"id": "fill", "selector": "#q"},
                {"id": "upload", "selector": "#f", "files": []},
            ]
        }
    )
    assert issues == [
        ("steps[0].id", "unsupported step id: teleport"),
        ("steps[1].url", "url is required for open"),
        ("steps[2]", "click requires text or selector"),
        ("steps[3].value", "value is required for fill"),
        ("steps[4].files", "files must include at least one path"),
    ]


def test_template_values_defer_type_checks() -> None:
    plan = {
        "steps": [
            {"id": "open", "url": "https://a.test"},
            {
                "id": "click",
                "selector": "{{steps.cfg.selector}}",
                "timeoutMs": "{{steps.cfg.timeout}}",
                "targetId": "{{targetId}}",
            },
            {"id": "count", "text": "x", "assert": {"gte": {"count": "{{steps.cfg.min}}"}}},
        ]
    }
    assert _messages(plan) == []


def test_timeout_must_be_positive_integer() -> None:
    issues = _messages({"steps": [{"id": "list", "timeoutMs": 0}, {"id": "list", "timeoutMs": 1.5}]})
    assert [path for path, _ in issues] == ["steps[0].timeoutMs", "steps[1].timeoutMs"]


def test_repeat_until_rules() -> None:
    base = {"id": "repeat-until", "step": {"id": "count", "selector": ".row"}, "untilPath": "count"}
    assert _messages({"steps": [{**base, "untilGte": 3}]}) == []
    assert _messages({"steps": [{**base, "untilDeltaGte": 1}]}) == []

    two_conditions = _messages({"steps": [{**base, "untilGte": 3, "untilChanged": True}]})
    assert two_conditions == [
        (
            "steps[0]",
            "repeat-until requires exactly one condition: untilEquals, untilGte, untilDeltaGte, or untilChanged=true",
        )
    ]

    nested_alias = _messages(
        {"steps": [{**base, "untilGte": 3, "step": {"id": "count", "selector": ".row", "as": "x"}}]}
    )
    assert nested_alias == [("steps[0].step.as", "nested step must not define as; use top-level step.as")]

    nested_repeat = _messages({"steps": [{**base, "untilGte": 3, "step": {"id": "repeatUntil"}}]})
    assert nested_repeat == [("steps[0].step.id", "nested repeat-until is not supported")]

    too_many = _messages({"steps": [{**base, "untilGte": 3, "maxAttempts": 26}]})
    assert too_many == [("steps[0].maxAttempts", "maxAttempts must be an integer between 1 and 25")]

    changed_false = _messages({"steps": [{**base, "untilChanged": False}]})
    assert ("steps[0].untilChanged", "untilChanged must be true when provided") in changed_false


def test_scroll_plan_count_options_need_selector() -> None:
    issues = _messages(
        {"steps": [{"id": "scroll-plan", "scrollMode": "sideways", "countContains": "x", "countVisibleOnly": True}]}
    )
    assert issues == [
        ("steps[0].scrollMode", "scrollMode must be one of: absolute, relative"),
        ("steps[0].countContains", "countContains requires countSelector"),
        ("steps[0].countVisibleOnly", "countVisibleOnly requires countSelector"),
    ]


def test_result_and_require_shapes() -> None:
    assert _messages({"steps": [{"id": "list"}], "result": {}}) == [
        ("result", "result map must include at least one key")
    ]
    assert _messages({"steps": [{"id": "list"}], "result": {"n": ""}}) == [
        ("result.n", "result source path must be a non-empty string")
    ]
    assert _messages({"steps": [{"id": "list"}], "require": {"gte": {"n": "big"}}}) == [
        ("require.gte.n", "require.gte values must be numbers")
    ]
    assert _messages({"steps": [{"id": "list"}], "require": {"truthy": "n"}}) == [
        ("require.truthy", "require.truthy must be a string[]")
    ]
