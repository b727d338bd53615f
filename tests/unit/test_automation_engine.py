import uuid
from datetime import datetime, timedelta, timezone

import pytest

from metahub.persistence.models import TriggerType
from metahub.services.automation_engine import (
    ActionSpec,
    ConditionContext,
    FieldCondition,
    RuleDefinition,
    RuleDefinitionError,
    StatusCondition,
    TagCondition,
    TimeElapsedCondition,
    TriggerEvent,
    apply_operator,
    evaluate,
    parse_action,
    parse_condition,
    trigger_matches,
    validate_rule,
)
from metahub.services.threads import ThreadSnapshot

WS = uuid.uuid4()
THREAD_ID = uuid.uuid4()
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _snapshot(**overrides):
    fields = dict(
        id=THREAD_ID,
        workspace_id=WS,
        channel="whatsapp",
        external_id="15550001111",
        status="open",
        priority="low",
        assigned_to=None,
        ai_enabled=True,
        unread_count=2,
        tags=frozenset({"vip"}),
        contact_name="Dana",
        last_customer_message_at=NOW - timedelta(minutes=45),
        first_response_at=None,
        created_at=NOW - timedelta(days=1),
    )
    fields.update(overrides)
    return ThreadSnapshot(**fields)


def _event(text="Where is my refund?", trigger=TriggerType.new_message, **overrides):
    fields = dict(
        trigger=trigger,
        workspace_id=WS,
        thread_id=THREAD_ID,
        occurred_at=NOW,
        text=text,
        channel="whatsapp",
    )
    fields.update(overrides)
    return TriggerEvent(**fields)


def _rule(name="rule", trigger=TriggerType.new_message, conditions=(), priority=0, **overrides):
    fields = dict(
        id=uuid.uuid4(),
        workspace_id=WS,
        name=name,
        trigger=trigger,
        conditions=tuple(parse_condition(c) for c in conditions),
        actions=(ActionSpec("apply_tag", {"tag": "seen"}),),
        priority=priority,
        created_at=NOW - timedelta(days=2),
    )
    fields.update(overrides)
    return RuleDefinition(**fields)


def _ctx(event=None, thread=None):
    return ConditionContext(event=event or _event(), thread=thread or _snapshot(), now=NOW)


# ── Operators ───────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "operator, actual, expected, result",
    [
        ("equals", "open", "open", True),
        ("not_equals", "open", "solved", True),
        ("contains", "Where is my REFUND?", "refund", True),
        ("contains", ["a", "b"], "b", True),
        ("contains", None, "x", False),
        ("not_contains", "hello", "refund", True),
        ("not_contains", None, "x", True),
        ("exists", "", None, True),
        ("exists", None, None, False),
        ("not_exists", None, None, True),
        ("greater_than", 3, 2, True),
        ("greater_than", "3", 2, False),
        ("greater_than", True, 0, False),
        ("less_than", 1.5, 2, True),
    ],
)
def test_apply_operator(operator, actual, expected, result):
    assert apply_operator(operator, actual, expected) is result


def test_unknown_operator_is_rejected():
    with pytest.raises(RuleDefinitionError):
        apply_operator("matches", "a", "a")
    with pytest.raises(RuleDefinitionError):
        parse_condition({"type": "field", "field": "text", "operator": "regex", "value": "x"})


# ── Conditions ──────────────────────────────────────────────────────


def test_typed_conditions_parse():
    assert parse_condition({"type": "tag", "tag": "vip"}) == TagCondition("vip")
    assert parse_condition({"type": "tag", "tag": "vip", "operator": "not_contains"}) == TagCondition(
        "vip", present=False
    )
    assert parse_condition({"type": "status", "status": "pending", "operator": "not_equals"}) == StatusCondition(
        "pending", negate=True
    )
    assert parse_condition({"type": "time_elapsed", "minutes": 30}) == TimeElapsedCondition(30.0)


def test_legacy_field_clauses_map_onto_typed_conditions():
    assert parse_condition({"field": "tag", "operator": "equals", "value": "vip"}) == TagCondition("vip")
    assert parse_condition({"field": "status", "operator": "equals", "value": "open"}) == StatusCondition("open")
    assert parse_condition({"field": "text", "operator": "contains", "value": "refund"}) == FieldCondition(
        "text", "contains", "refund"
    )


@pytest.mark.parametrize(
    "raw",
    [
        "not a dict",
        {},
        {"type": "tag"},
        {"type": "status", "status": "archived"},
        {"type": "status", "status": "open", "operator": "contains"},
        {"type": "time_elapsed"},
        {"type": "time_elapsed", "minutes": -1},
        {"type": "field"},
        {"type": "weather"},
        {"field": "tag", "operator": "equals", "value": 3},
    ],
)
def test_bad_conditions_are_rejected(raw):
    with pytest.raises(RuleDefinitionError):
        parse_condition(raw)


def test_conditions_against_snapshot():
    ctx = _ctx()
    assert TagCondition("vip").matches(ctx)
    assert not TagCondition("vip", present=False).matches(ctx)
    assert StatusCondition("open").matches(ctx)
    assert TimeElapsedCondition(30).matches(ctx)
    assert not TimeElapsedCondition(60).matches(ctx)
    assert FieldCondition("text", "contains", "refund").matches(ctx)
    assert FieldCondition("thread.unread_count", "greater_than", 1).matches(ctx)
    assert FieldCondition("assigned_to", "not_exists").matches(ctx)


def test_time_elapsed_without_anchor_never_matches():
    ctx = _ctx(thread=_snapshot(last_customer_message_at=None))
    assert not TimeElapsedCondition(0).matches(ctx)


def test_empty_condition_list_always_matches():
    assert _rule().conditions_hold(_ctx())


def test_conditions_are_conjunctive():
    rule = _rule(conditions=[{"type": "tag", "tag": "vip"}, {"type": "status", "status": "pending"}])
    assert not rule.conditions_hold(_ctx())


# ── Actions ─────────────────────────────────────────────────────────


def test_action_aliases_and_flat_params():
    action = parse_action({"type": "add_tag", "tag": "billing"})
    assert action == ActionSpec("apply_tag", {"tag": "billing"})
    assert not action.deferred
    assert parse_action({"type": "assign_to", "params": {"user_id": "u1"}}).type == "assign_agent"


def test_sends_and_delays_are_deferred():
    assert parse_action({"type": "send_message", "params": {"text": "hi"}}).deferred
    assert parse_action({"type": "apply_tag", "params": {"tag": "x", "delay_minutes": 5}}).deferred


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"type": "explode"},
        {"type": "apply_tag"},
        {"type": "change_status", "status": "archived"},
        {"type": "send_message"},
        {"type": "send_template"},
        {"type": "send_scheduled_action", "action_type": "send_scheduled_action"},
        {"type": "apply_tag", "tag": "x", "delay_minutes": -1},
        {"type": "apply_tag", "tag": "x", "delay_minutes": "soon"},
        {"type": "apply_tag", "params": ["x"]},
    ],
)
def test_bad_actions_are_rejected(raw):
    with pytest.raises(RuleDefinitionError):
        parse_action(raw)


# ── Triggers and evaluation ─────────────────────────────────────────


def test_keyword_trigger_is_case_insensitive():
    rule = _rule(trigger_config={"keywords": ["REFUND", "cancel"]})
    assert trigger_matches(rule, _event("where is my refund"), NOW)
    assert not trigger_matches(rule, _event("thanks!"), NOW)


def test_channel_filter():
    rule = _rule(trigger_config={"channel": "messenger"})
    assert not trigger_matches(rule, _event(), NOW)


def test_status_changed_trigger():
    rule = _rule(trigger=TriggerType.status_changed, trigger_config={"to": "solved"})
    solved = _event(trigger=TriggerType.status_changed, from_status="open", to_status="solved")
    reopened = _event(trigger=TriggerType.status_changed, from_status="solved", to_status="open")
    assert trigger_matches(rule, solved, NOW)
    assert not trigger_matches(rule, reopened, NOW)


def test_tag_added_trigger():
    rule = _rule(trigger=TriggerType.tag_added, trigger_config={"tag": "vip"})
    assert trigger_matches(rule, _event(trigger=TriggerType.tag_added, tag="vip"), NOW)
    assert not trigger_matches(rule, _event(trigger=TriggerType.tag_added, tag="new"), NOW)


def test_time_elapsed_trigger_and_key():
    anchor = NOW - timedelta(minutes=40)
    rule = _rule(trigger=TriggerType.time_elapsed, trigger_config={"minutes": 30})
    event = _event(trigger=TriggerType.time_elapsed, anchor_at=anchor)
    assert trigger_matches(rule, event, NOW)
    assert not trigger_matches(rule, event, anchor + timedelta(minutes=10))
    assert event.trigger_key == f"time_elapsed:{anchor.isoformat()}"
    assert _event().trigger_key is None


def test_evaluate_orders_by_priority_then_age():
    low = _rule("low", priority=1)
    high = _rule("high", priority=10)
    older = _rule("older", priority=1, created_at=NOW - timedelta(days=9))
    plans = evaluate(_event(), [low, high, older], _snapshot(), NOW)
    assert [p.rule.name for p in plans] == ["high", "older", "low"]


def test_evaluate_skips_disabled_foreign_and_non_matching_rules():
    rules = [
        _rule("disabled", enabled=False),
        _rule("foreign", workspace_id=uuid.uuid4()),
        _rule("wrong trigger", trigger=TriggerType.tag_added),
        _rule("condition fails", conditions=[{"type": "tag", "tag": "churned"}]),
        _rule("match", conditions=[{"field": "text", "operator": "contains", "value": "refund"}]),
    ]
    plans = evaluate(_event(), rules, _snapshot(), NOW)
    assert [p.rule.name for p in plans] == ["match"]
    assert plans[0].actions == rules[-1].actions


@pytest.mark.parametrize("tags, expected", [(frozenset(), 0), (frozenset({"billing"}), 1)])
def test_status_changed_rule_needs_every_condition(tags, expected):
    rule = _rule(
        "billing reopened",
        trigger=TriggerType.status_changed,
        conditions=[
            {"type": "tag", "tag": "billing"},
            {"field": "status", "operator": "equals", "value": "open"},
        ],
        actions=(
            ActionSpec("apply_tag", {"tag": "reopened"}),
            ActionSpec("assign_agent", {"strategy": "round_robin"}),
            ActionSpec("change_status", {"status": "pending"}),
        ),
    )
    event = _event(text=None, trigger=TriggerType.status_changed, from_status="solved", to_status="open")

    plans = evaluate(event, [rule], _snapshot(status="open", tags=tags), NOW)

    assert len(plans) == expected
    if plans:
        assert [a.type for a in plans[0].actions] == ["apply_tag", "assign_agent", "change_status"]


def test_outside_hours_trigger_follows_schedule():
    # NOW is Monday 10:00 UTC
    rule = _rule(trigger=TriggerType.outside_hours)
    assert not trigger_matches(rule, _event(), NOW)
    assert trigger_matches(rule, _event(occurred_at=NOW.replace(hour=19)), NOW)
    assert trigger_matches(rule, _event(occurred_at=NOW - timedelta(days=1)), NOW)

    new_york = _rule(trigger=TriggerType.outside_hours, trigger_config={"schedule": {"timezone": "America/New_York"}})
    assert trigger_matches(new_york, _event(), NOW)

    weekends = _rule(
        trigger=TriggerType.outside_hours,
        trigger_config={"schedule": {"days": [0, 6], "start_hour": 10, "end_hour": 14}},
    )
    assert trigger_matches(weekends, _event(), NOW)


def test_outside_hours_only_reacts_to_messages():
    rule = _rule(trigger=TriggerType.outside_hours)
    late_tag = _event(trigger=TriggerType.tag_added, tag="vip", occurred_at=NOW.replace(hour=22))
    assert not trigger_matches(rule, late_tag, NOW)


def test_unassigned_trigger_needs_an_unassigned_thread():
    rule = _rule(trigger=TriggerType.unassigned, trigger_config={"channel": "whatsapp"}, priority=5)
    assert trigger_matches(rule, _event(), NOW, _snapshot())
    assert not trigger_matches(rule, _event(), NOW, _snapshot(assigned_to="user-agent"))
    assert not trigger_matches(rule, _event(channel="instagram"), NOW, _snapshot())

    plans = evaluate(_event(), [rule, _rule("any message")], _snapshot(), NOW)
    assert [p.rule.name for p in plans] == ["rule", "any message"]


def test_cooldown_seconds():
    assert _rule().cooldown_seconds == 0
    assert _rule(trigger_config={"cooldown_minutes": 30}).cooldown_seconds == 1800
    assert _rule(trigger_config={"cooldown_minutes": "soon"}).cooldown_seconds == 0


# ── validate_rule ───────────────────────────────────────────────────


def test_validate_rule_accepts_a_complete_rule():
    validate_rule(
        "new_message",
        {"keywords": ["refund"]},
        [{"type": "tag", "tag": "vip"}],
        [{"type": "apply_tag", "tag": "refund"}],
    )


@pytest.mark.parametrize(
    "trigger, config, conditions, actions",
    [
        ("on_fire", {}, [], [{"type": "apply_tag", "tag": "x"}]),
        ("new_message", "keywords", [], [{"type": "apply_tag", "tag": "x"}]),
        ("new_message", {}, {"type": "tag"}, [{"type": "apply_tag", "tag": "x"}]),
        ("new_message", {}, [], []),
        ("time_elapsed", {}, [], [{"type": "apply_tag", "tag": "x"}]),
        ("new_message", {}, [{"type": "weather"}], [{"type": "apply_tag", "tag": "x"}]),
        ("new_message", {"cooldown_minutes": -1}, [], [{"type": "apply_tag", "tag": "x"}]),
        ("new_message", {"cooldown_minutes": 2000}, [], [{"type": "apply_tag", "tag": "x"}]),
        ("outside_hours", {"schedule": {"days": [7]}}, [], [{"type": "apply_tag", "tag": "x"}]),
        ("outside_hours", {"schedule": {"timezone": "Mars/Olympus"}}, [], [{"type": "apply_tag", "tag": "x"}]),
    ],
)
def test_validate_rule_rejects(trigger, config, conditions, actions):
    with pytest.raises(RuleDefinitionError):
        validate_rule(trigger, config, conditions, actions)
