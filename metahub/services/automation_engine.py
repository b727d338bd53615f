"""
Automation rule evaluation.

A rule is ``trigger -> conditions -> actions``. Evaluation is pure: given a
trigger event, the workspace's rules and a snapshot of the thread, it returns
one :class:`ExecutionPlan` per matching rule, highest priority first.
Conditions are conjunctive; an empty list always matches.

Applying the plans (and re-checking conditions before each action) lives in
:mod:`metahub.services.automation_executor`.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from metahub.persistence.models import AutomationRule, EventType, ThreadStatus, TriggerType, ensure_utc
from metahub.services.threads import ThreadSnapshot
from metahub.webhooks.events import InboundEvent

logger = logging.getLogger(__name__)

OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "exists",
    "not_exists",
    "greater_than",
    "less_than",
)

ACTION_ALIASES = {"add_tag": "apply_tag", "assign_to": "assign_agent"}
ACTION_TYPES = (
    "apply_tag",
    "remove_tag",
    "change_status",
    "assign_agent",
    "send_scheduled_action",
    "trigger_handoff",
    "send_message",
    "send_template",
)
# Outbound sends always go through a ScheduledAction
DEFERRED_ACTIONS = frozenset({"send_message", "send_template", "send_scheduled_action"})

# Triggers evaluated for every inbound customer message
MESSAGE_TRIGGERS = (TriggerType.new_message, TriggerType.outside_hours, TriggerType.unassigned)
MAX_COOLDOWN_MINUTES = 24 * 60

_TEXT_FIELDS = {"text", "message", "message_text", "message.text"}


class RuleDefinitionError(ValueError):
    """Stored or submitted rule JSON does not describe a valid rule."""


@dataclass(frozen=True)
class TriggerEvent:
    trigger: TriggerType
    workspace_id: uuid.UUID
    thread_id: uuid.UUID
    occurred_at: datetime
    text: str | None = None
    channel: str | None = None
    sender_id: str | None = None
    message_type: str | None = None
    event_type: str | None = None
    tag: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    anchor_at: datetime | None = None
    depth: int = 0

    @classmethod
    def from_inbound(cls, event: InboundEvent, thread_id: uuid.UUID) -> "TriggerEvent":
        return cls(
            trigger=TriggerType.new_message,
            workspace_id=event.workspace_id,
            thread_id=thread_id,
            occurred_at=event.timestamp,
            text=event.text,
            channel=event.channel.value,
            sender_id=event.sender_id,
            message_type=event.message_type,
            event_type=EventType(event.event_type).value,
        )

    @property
    def trigger_key(self) -> str | None:
        if self.trigger == TriggerType.time_elapsed and self.anchor_at is not None:
            return f"time_elapsed:{ensure_utc(self.anchor_at).isoformat()}"
        return None


@dataclass(frozen=True)
class ConditionContext:
    event: TriggerEvent
    thread: ThreadSnapshot
    now: datetime


def _resolve_field(name: str, ctx: ConditionContext) -> Any:
    if name in ("tag", "tags"):
        return sorted(ctx.thread.tags)
    if name in _TEXT_FIELDS:
        return ctx.event.text
    if name.startswith("message."):
        return getattr(ctx.event, name[len("message."):], None)
    if name.startswith("thread."):
        return ctx.thread.field(name[len("thread."):])
    if hasattr(ctx.thread, name):
        return ctx.thread.field(name)
    return getattr(ctx.event, name, None)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def apply_operator(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        if isinstance(actual, str) and isinstance(expected, str):
            return expected.lower() in actual.lower()
        return False
    if operator == "not_contains":
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected not in actual
        if isinstance(actual, str) and isinstance(expected, str):
            return expected.lower() not in actual.lower()
        return True
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    if operator == "greater_than":
        return _is_number(actual) and _is_number(expected) and actual > expected
    if operator == "less_than":
        return _is_number(actual) and _is_number(expected) and actual < expected
    raise RuleDefinitionError(f"unknown operator {operator!r}")


@dataclass(frozen=True)
class TagCondition:
    tag: str
    present: bool = True

    def matches(self, ctx: ConditionContext) -> bool:
        return (self.tag in ctx.thread.tags) == self.present


@dataclass(frozen=True)
class StatusCondition:
    status: str
    negate: bool = False

    def matches(self, ctx: ConditionContext) -> bool:
        return (ctx.thread.status == self.status) != self.negate


@dataclass(frozen=True)
class TimeElapsedCondition:
    """True once ``minutes`` have passed since a thread timestamp (or the event)."""

    minutes: float
    since: str = "last_customer_message_at"

    def matches(self, ctx: ConditionContext) -> bool:
        if self.since == "event":
            anchor = ctx.event.anchor_at or ctx.event.occurred_at
        else:
            anchor = ctx.thread.field(self.since)
        if not isinstance(anchor, datetime):
            return False
        return ensure_utc(ctx.now) - ensure_utc(anchor) >= timedelta(minutes=self.minutes)


@dataclass(frozen=True)
class FieldCondition:
    field: str
    operator: str
    value: Any = None

    def matches(self, ctx: ConditionContext) -> bool:
        return apply_operator(self.operator, _resolve_field(self.field, ctx), self.value)


Condition = Union[TagCondition, StatusCondition, TimeElapsedCondition, FieldCondition]


def _operator(raw: dict[str, Any], default: str = "equals") -> str:
    operator = raw.get("operator", default)
    if operator not in OPERATORS:
        raise RuleDefinitionError(f"unknown operator {operator!r}")
    return operator


def parse_condition(raw: Any) -> Condition:
    if not isinstance(raw, dict):
        raise RuleDefinitionError("condition must be an object")
    kind = raw.get("type")

    if kind is None:
        # Legacy {field, operator, value} clause
        name = raw.get("field")
        if not name:
            raise RuleDefinitionError("condition needs a type or a field")
        operator = _operator(raw)
        if name in ("tag", "tags") and operator in ("equals", "contains", "not_equals", "not_contains"):
            if not isinstance(raw.get("value"), str):
                raise RuleDefinitionError("tag condition value must be a string")
            return TagCondition(raw["value"], present=operator in ("equals", "contains"))
        if name == "status" and operator in ("equals", "not_equals"):
            return StatusCondition(_status(raw.get("value")), negate=operator == "not_equals")
        return FieldCondition(name, operator, raw.get("value"))

    if kind == "tag":
        tag = raw.get("tag") or raw.get("value")
        if not isinstance(tag, str) or not tag:
            raise RuleDefinitionError("tag condition needs a tag")
        operator = _operator(raw, "contains")
        return TagCondition(tag, present=operator not in ("not_contains", "not_equals"))
    if kind == "status":
        operator = _operator(raw)
        if operator not in ("equals", "not_equals"):
            raise RuleDefinitionError("status condition supports equals/not_equals")
        return StatusCondition(_status(raw.get("status", raw.get("value"))), negate=operator == "not_equals")
    if kind == "time_elapsed":
        try:
            minutes = float(raw.get("minutes"))
        except (TypeError, ValueError) as exc:
            raise RuleDefinitionError("time_elapsed condition needs minutes") from exc
        if minutes < 0:
            raise RuleDefinitionError("minutes must not be negative")
        return TimeElapsedCondition(minutes, since=str(raw.get("since") or "last_customer_message_at"))
    if kind == "field":
        if not raw.get("field"):
            raise RuleDefinitionError("field condition needs a field")
        return FieldCondition(raw["field"], _operator(raw), raw.get("value"))
    raise RuleDefinitionError(f"unknown condition type {kind!r}")


def _status(value: Any) -> str:
    try:
        return ThreadStatus(value).value
    except ValueError as exc:
        raise RuleDefinitionError(f"unknown status {value!r}") from exc


@dataclass(frozen=True)
class ActionSpec:
    type: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def deferred(self) -> bool:
        return self.type in DEFERRED_ACTIONS or float(self.params.get("delay_minutes") or 0) > 0


def parse_action(raw: Any) -> ActionSpec:
    if not isinstance(raw, dict) or not raw.get("type"):
        raise RuleDefinitionError("action needs a type")
    action_type = ACTION_ALIASES.get(raw["type"], raw["type"])
    if action_type not in ACTION_TYPES:
        raise RuleDefinitionError(f"unknown action type {raw['type']!r}")
    params = raw.get("params")
    if params is None:
        params = {k: v for k, v in raw.items() if k != "type"}
    if not isinstance(params, dict):
        raise RuleDefinitionError("action params must be an object")
    try:
        delay = float(params.get("delay_minutes") or 0)
    except (TypeError, ValueError) as exc:
        raise RuleDefinitionError("delay_minutes must be a number") from exc
    if delay < 0:
        raise RuleDefinitionError("delay_minutes must not be negative")

    if action_type in ("apply_tag", "remove_tag") and not params.get("tag"):
        raise RuleDefinitionError(f"{action_type} needs a tag")
    if action_type == "change_status":
        _status(params.get("status"))
    if action_type == "send_message" and not params.get("text"):
        raise RuleDefinitionError("send_message needs text")
    if action_type == "send_template" and not params.get("template_name"):
        raise RuleDefinitionError("send_template needs template_name")
    if action_type == "send_scheduled_action":
        inner = ACTION_ALIASES.get(params.get("action_type"), params.get("action_type"))
        if inner not in ACTION_TYPES or inner == "send_scheduled_action":
            raise RuleDefinitionError("send_scheduled_action needs a valid action_type")
    return ActionSpec(action_type, dict(params))


@dataclass(frozen=True)
class RuleDefinition:
    id: uuid.UUID
    workspace_id: uuid.UUID
    name: str
    trigger: TriggerType
    conditions: tuple[Condition, ...] = ()
    actions: tuple[ActionSpec, ...] = ()
    trigger_config: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    priority: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, rule: AutomationRule) -> "RuleDefinition":
        return cls(
            id=rule.id,
            workspace_id=rule.workspace_id,
            name=rule.name,
            trigger=TriggerType(rule.trigger_type),
            conditions=tuple(parse_condition(c) for c in (rule.conditions or [])),
            actions=tuple(parse_action(a) for a in (rule.actions or [])),
            trigger_config=dict(rule.trigger_config or {}),
            enabled=bool(rule.enabled),
            priority=rule.priority or 0,
            created_at=ensure_utc(rule.created_at),
        )

    def conditions_hold(self, ctx: ConditionContext) -> bool:
        return all(condition.matches(ctx) for condition in self.conditions)

    @property
    def cooldown_seconds(self) -> int:
        """Per-thread quiet period after the rule fires; 0 disables it."""
        try:
            minutes = int(self.trigger_config.get("cooldown_minutes") or 0)
        except (TypeError, ValueError):
            return 0
        return max(minutes, 0) * 60


def validate_rule(trigger_type: str, trigger_config: Any, conditions: Any, actions: Any) -> None:
    """Raise RuleDefinitionError for anything :func:`RuleDefinition.from_model` would reject."""
    try:
        trigger = TriggerType(trigger_type)
    except ValueError as exc:
        raise RuleDefinitionError(f"unknown trigger {trigger_type!r}") from exc
    if not isinstance(trigger_config or {}, dict):
        raise RuleDefinitionError("trigger_config must be an object")
    if not isinstance(conditions or [], list) or not isinstance(actions or [], list):
        raise RuleDefinitionError("conditions and actions must be lists")
    for raw in conditions or []:
        parse_condition(raw)
    if not actions:
        raise RuleDefinitionError("a rule needs at least one action")
    for raw in actions:
        parse_action(raw)
    if trigger == TriggerType.time_elapsed:
        try:
            float((trigger_config or {})["minutes"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RuleDefinitionError("time_elapsed trigger needs trigger_config.minutes") from exc
    cooldown = (trigger_config or {}).get("cooldown_minutes")
    if cooldown is not None and (
        not isinstance(cooldown, int) or isinstance(cooldown, bool) or not 0 <= cooldown <= MAX_COOLDOWN_MINUTES
    ):
        raise RuleDefinitionError(f"cooldown_minutes must be an integer between 0 and {MAX_COOLDOWN_MINUTES}")
    if trigger == TriggerType.outside_hours:
        _parse_schedule((trigger_config or {}).get("schedule"))


@dataclass(frozen=True)
class ExecutionPlan:
    rule: RuleDefinition
    event: TriggerEvent

    @property
    def actions(self) -> tuple[ActionSpec, ...]:
        return self.rule.actions

    @property
    def trigger_key(self) -> str | None:
        return self.event.trigger_key


@dataclass(frozen=True)
class BusinessHours:
    days: frozenset[int] = frozenset({1, 2, 3, 4, 5})
    start_hour: int = 9
    end_hour: int = 18
    timezone: str = "UTC"

    def contains(self, moment: datetime) -> bool:
        local = ensure_utc(moment).astimezone(ZoneInfo(self.timezone))
        # 0 = Sunday .. 6 = Saturday
        weekday = local.isoweekday() % 7
        return weekday in self.days and self.start_hour <= local.hour < self.end_hour


def _parse_schedule(raw: Any) -> BusinessHours:
    """``{"days": [1..5], "start_hour": 9, "end_hour": 18, "timezone": "UTC"}``; every key optional."""
    if raw is None:
        return BusinessHours()
    if not isinstance(raw, dict):
        raise RuleDefinitionError("schedule must be an object")
    defaults = BusinessHours()
    days = raw.get("days", sorted(defaults.days))
    if not isinstance(days, list) or not all(isinstance(d, int) and 0 <= d <= 6 for d in days):
        raise RuleDefinitionError("schedule.days must be a list of weekdays 0-6 (0 = Sunday)")
    start = raw.get("start_hour", defaults.start_hour)
    end = raw.get("end_hour", defaults.end_hour)
    if not all(isinstance(h, int) and 0 <= h <= 24 for h in (start, end)):
        raise RuleDefinitionError("schedule hours must be integers 0-24")
    timezone = raw.get("timezone") or defaults.timezone
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, TypeError, ValueError) as exc:
        raise RuleDefinitionError(f"unknown timezone {timezone!r}") from exc
    return BusinessHours(frozenset(days), start, end, timezone)


def trigger_matches(
    rule: RuleDefinition,
    event: TriggerEvent,
    now: datetime,
    thread: ThreadSnapshot | None = None,
) -> bool:
    config = rule.trigger_config
    if rule.trigger in MESSAGE_TRIGGERS and event.trigger == TriggerType.new_message:
        if config.get("channel") and config["channel"] != event.channel:
            return False
        if rule.trigger == TriggerType.outside_hours:
            try:
                return not _parse_schedule(config.get("schedule")).contains(event.occurred_at)
            except RuleDefinitionError as exc:
                logger.warning("Bad outside_hours schedule: %s", exc, extra={"rule_id": rule.id})
                return False
        if rule.trigger == TriggerType.unassigned:
            return thread is not None and not thread.assigned_to
    if rule.trigger != event.trigger:
        return False
    if config.get("channel") and config["channel"] != event.channel:
        return False

    if event.trigger == TriggerType.new_message:
        keywords = [k.lower() for k in config.get("keywords") or [] if isinstance(k, str)]
        if keywords:
            text = (event.text or "").lower()
            return any(keyword in text for keyword in keywords)
        return True
    if event.trigger == TriggerType.tag_added:
        return not config.get("tag") or config["tag"] == event.tag
    if event.trigger == TriggerType.status_changed:
        if config.get("from") and config["from"] != event.from_status:
            return False
        return not config.get("to") or config["to"] == event.to_status
    if event.trigger == TriggerType.time_elapsed:
        if event.anchor_at is None:
            return False
        minutes = float(config.get("minutes") or 0)
        return ensure_utc(now) - ensure_utc(event.anchor_at) >= timedelta(minutes=minutes)
    return False


def _order_key(rule: RuleDefinition):
    created = rule.created_at.timestamp() if rule.created_at else 0.0
    return (-rule.priority, created, str(rule.id))


def evaluate(
    event: TriggerEvent,
    rules: list[RuleDefinition],
    thread: ThreadSnapshot,
    now: datetime,
) -> list[ExecutionPlan]:
    """Plans for every enabled rule of the event's workspace that matches, by priority."""
    ctx = ConditionContext(event=event, thread=thread, now=now)
    plans = []
    for rule in sorted(rules, key=_order_key):
        if not rule.enabled or rule.workspace_id != event.workspace_id:
            continue
        if thread.workspace_id != rule.workspace_id:
            continue
        if not trigger_matches(rule, event, now, thread):
            continue
        if rule.conditions_hold(ctx):
            plans.append(ExecutionPlan(rule=rule, event=event))
    return plans
