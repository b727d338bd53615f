"""
Applies automation plans to threads.

Conditions are re-checked against a fresh thread snapshot immediately before
every action, so an earlier rule (or an earlier action of the same rule) can
make a later action moot. Each rule run writes one ``automation_executions``
row; one failing rule never stops the next.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from metahub.config.settings import Settings, get_settings
from metahub.errors import RuleExecutionFailed
from metahub.monitoring.metrics import RULE_EXECUTIONS
from metahub.persistence.models import (
    AutomationExecution,
    AutomationRule,
    ExecutionStatus,
    ScheduledAction,
    ScheduledActionStatus,
    Thread,
    ThreadStatus,
    TriggerType,
    now_utc,
)
from metahub.persistence.upsert import insert_ignore
from metahub.services.assignment import ROUND_ROBIN, AssignmentService
from metahub.services.audit import AuditRecorder
from metahub.services.automation_engine import (
    ACTION_ALIASES,
    MESSAGE_TRIGGERS,
    ActionSpec,
    ConditionContext,
    ExecutionPlan,
    RuleDefinition,
    RuleDefinitionError,
    TriggerEvent,
    evaluate,
)
from metahub.services.channel_sender import ChannelSender, resolve_target
from metahub.services.handoff import HandoffService
from metahub.services.rate_limit_store import InMemoryRateLimitStore, RateLimitStore
from metahub.services.sla import SLAService
from metahub.services.threads import ThreadStore

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    applied: bool
    detail: str = ""
    follow_up: TriggerEvent | None = None


@dataclass
class RuleRun:
    rule_id: uuid.UUID
    status: ExecutionStatus
    succeeded: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    follow_ups: list[TriggerEvent] = field(default_factory=list)


class ActionApplier:
    """Immediate application of a single action to a thread."""

    def __init__(
        self,
        db: Session,
        sender: ChannelSender | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.db = db
        self.sender = sender
        self.settings = settings or get_settings()
        self.clock = clock
        self.threads = ThreadStore(db)

    def apply(self, thread: Thread, action_type: str, params: dict[str, Any], depth: int = 0) -> ActionOutcome:
        action_type = ACTION_ALIASES.get(action_type, action_type)
        handler = getattr(self, f"_{action_type}", None)
        if handler is None:
            raise RuleExecutionFailed(str(thread.id), f"unsupported action {action_type!r}")
        return handler(thread, params, depth)

    def _follow_up(self, thread: Thread, depth: int, **kwargs) -> TriggerEvent:
        return TriggerEvent(
            workspace_id=thread.workspace_id,
            thread_id=thread.id,
            occurred_at=self.clock(),
            channel=thread.channel.value if hasattr(thread.channel, "value") else thread.channel,
            depth=depth + 1,
            **kwargs,
        )

    def _apply_tag(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        tag = str(params["tag"])
        if not self.threads.add_tag(thread, tag):
            return ActionOutcome(False, f"tag {tag!r} already present")
        return ActionOutcome(True, f"tagged {tag!r}", self._follow_up(thread, depth, trigger=TriggerType.tag_added, tag=tag))

    def _remove_tag(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        tag = str(params["tag"])
        if not self.threads.remove_tag(thread, tag):
            return ActionOutcome(False, f"tag {tag!r} not present")
        return ActionOutcome(True, f"untagged {tag!r}")

    def _change_status(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        self.db.refresh(thread)
        previous = ThreadStatus(thread.status)
        status = ThreadStatus(params["status"])
        if not self.threads.set_status(thread, status):
            return ActionOutcome(False, f"already {status.value}")
        return ActionOutcome(
            True,
            f"{previous.value} -> {status.value}",
            self._follow_up(
                thread,
                depth,
                trigger=TriggerType.status_changed,
                from_status=previous.value,
                to_status=status.value,
            ),
        )

    def _assign_agent(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        service = AssignmentService(self.db)
        decision = service.pick(
            thread.workspace_id,
            strategy=params.get("strategy") or ROUND_ROBIN,
            user_id=params.get("user_id"),
            candidates=params.get("candidates"),
        )
        if decision.reason.startswith("unknown_strategy"):
            raise RuleExecutionFailed(str(thread.id), decision.reason)
        if decision.user_id is None:
            return ActionOutcome(False, decision.reason)
        if thread.assigned_to == decision.user_id:
            return ActionOutcome(False, "already assigned")
        service.assign(thread, decision.user_id)
        return ActionOutcome(True, f"assigned {decision.user_id} ({decision.reason})")

    def _trigger_handoff(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        reason = str(params.get("reason") or "automation")
        if not HandoffService(self.db).handoff(thread.workspace_id, thread.id, reason):
            return ActionOutcome(False, "already handed off")
        return ActionOutcome(True, "handed off")

    def _deliver(self, thread: Thread, send: Callable[..., str]) -> ActionOutcome:
        message_id = send()
        sent_at = self.clock()
        self.threads.record_outbound(thread.id, sent_at)
        SLAService(self.db).mark_first_response(thread.id, thread.workspace_id, sent_at)
        return ActionOutcome(True, f"sent {message_id}")

    def _send_message(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        if self.sender is None:
            raise RuleExecutionFailed(str(thread.id), "no channel sender configured")
        target = resolve_target(self.db, thread, self.settings.whatsapp_token)
        return self._deliver(thread, lambda: self.sender.send_text(target, str(params["text"])))

    def _send_template(self, thread: Thread, params: dict[str, Any], depth: int) -> ActionOutcome:
        if self.sender is None:
            raise RuleExecutionFailed(str(thread.id), "no channel sender configured")
        target = resolve_target(self.db, thread, self.settings.whatsapp_token)
        return self._deliver(
            thread,
            lambda: self.sender.send_template(
                target,
                str(params["template_name"]),
                language=params.get("language") or "en_US",
                components=params.get("components"),
            ),
        )


class AutomationExecutor:
    def __init__(
        self,
        db: Session,
        sender: ChannelSender | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = now_utc,
        max_depth: int = 1,
        rate_limits: RateLimitStore | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.max_depth = max_depth
        self.rate_limits = rate_limits or InMemoryRateLimitStore(clock=clock)
        self.threads = ThreadStore(db)
        self.applier = ActionApplier(db, sender=sender, settings=self.settings, clock=clock)
        self.audit = AuditRecorder(db)

    @staticmethod
    def cooldown_key(rule_id: uuid.UUID, thread_id: uuid.UUID) -> str:
        return f"rule-cooldown:{rule_id}:{thread_id}"

    def load_rules(self, workspace_id: uuid.UUID, trigger: TriggerType) -> list[RuleDefinition]:
        triggers = MESSAGE_TRIGGERS if trigger == TriggerType.new_message else (trigger,)
        rows = (
            self.db.query(AutomationRule)
            .filter(
                AutomationRule.workspace_id == workspace_id,
                AutomationRule.trigger_type.in_(triggers),
                AutomationRule.enabled.is_(True),
            )
            .all()
        )
        rules = []
        for row in rows:
            try:
                rules.append(RuleDefinition.from_model(row))
            except RuleDefinitionError as exc:
                logger.warning("Skipping invalid rule: %s", exc, extra={"rule_id": row.id})
        return rules

    def handle(self, event: TriggerEvent, rules: list[RuleDefinition] | None = None) -> list[RuleRun]:
        """Evaluate and run every matching rule, then any follow-up triggers."""
        snapshot = self.threads.snapshot(event.workspace_id, event.thread_id)
        if snapshot is None:
            logger.warning("Automation skipped: thread not found", extra={"thread_id": event.thread_id})
            return []
        if rules is None:
            rules = self.load_rules(event.workspace_id, event.trigger)
        now = self.clock()
        runs = []
        for plan in evaluate(event, rules, snapshot, now):
            try:
                run = self.run_plan(plan)
            except Exception as exc:
                self.db.rollback()
                logger.exception("Rule run aborted", extra={"rule_id": plan.rule.id})
                self.audit.record(
                    event.workspace_id,
                    "automation.rule_failed",
                    target_type="automation_rule",
                    target_id=plan.rule.id,
                    detail={"error": str(exc), "thread_id": str(event.thread_id)},
                )
                self.db.commit()
                RULE_EXECUTIONS.labels(status=ExecutionStatus.failed.value).inc()
                continue
            if run is not None:
                runs.append(run)

        for run in list(runs):
            for follow_up in run.follow_ups:
                if follow_up.depth > self.max_depth:
                    continue
                runs.extend(self.handle(follow_up))
        return runs

    def run_plan(self, plan: ExecutionPlan) -> RuleRun | None:
        rule, event = plan.rule, plan.event
        cooldown_key = self.cooldown_key(rule.id, event.thread_id)
        if rule.cooldown_seconds and self.rate_limits.peek(cooldown_key):
            logger.info("Rule cooling down for thread", extra={"rule_id": rule.id, "thread_id": event.thread_id})
            return None
        started = time.perf_counter()
        execution_id = uuid.uuid4()
        claimed = insert_ignore(
            self.db,
            AutomationExecution,
            {
                "id": execution_id,
                "workspace_id": rule.workspace_id,
                "rule_id": rule.id,
                "thread_id": event.thread_id,
                "trigger_type": event.trigger,
                "trigger_key": plan.trigger_key,
                "status": ExecutionStatus.skipped,
            },
            ("rule_id", "thread_id", "trigger_key"),
        )
        if not claimed:
            logger.info("Rule already fired for %s", plan.trigger_key, extra={"rule_id": rule.id})
            return None
        if rule.cooldown_seconds:
            self.rate_limits.hit(cooldown_key, rule.cooldown_seconds)

        run = RuleRun(rule_id=rule.id, status=ExecutionStatus.skipped)
        thread = self.threads.get(event.workspace_id, event.thread_id)
        for index, action in enumerate(rule.actions):
            snapshot = self.threads.snapshot(event.workspace_id, event.thread_id)
            if snapshot is None or not rule.conditions_hold(ConditionContext(event, snapshot, self.clock())):
                run.skipped += len(rule.actions) - index
                logger.info("Conditions no longer hold, skipping remaining actions", extra={"rule_id": rule.id})
                break
            try:
                if action.deferred:
                    self.schedule(thread, action, rule.id)
                    run.succeeded += 1
                    continue
                outcome = self.applier.apply(thread, action.type, action.params, depth=event.depth)
            except Exception as exc:
                logger.warning(
                    "Action %s failed: %s",
                    action.type,
                    exc,
                    exc_info=True,
                    extra={"rule_id": rule.id, "thread_id": event.thread_id},
                )
                run.errors.append(f"{action.type}: {exc}")
                continue
            if outcome.applied:
                run.succeeded += 1
                if outcome.follow_up is not None:
                    run.follow_ups.append(outcome.follow_up)
            else:
                run.skipped += 1

        run.status = _final_status(run)
        now = self.clock()
        self.db.execute(
            update(AutomationExecution)
            .where(AutomationExecution.id == execution_id)
            .values(
                status=run.status,
                actions_attempted=len(rule.actions),
                actions_succeeded=run.succeeded,
                actions_skipped=run.skipped,
                error_message="; ".join(run.errors)[:2000] or None,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(AutomationRule)
            .where(AutomationRule.id == rule.id)
            .values(execution_count=AutomationRule.execution_count + 1, last_executed_at=now)
            .execution_options(synchronize_session=False)
        )
        if run.errors:
            self.audit.record(
                rule.workspace_id,
                "automation.rule_failed",
                target_type="automation_rule",
                target_id=rule.id,
                detail={"errors": run.errors, "thread_id": str(event.thread_id), "status": run.status.value},
            )
        self.db.commit()
        RULE_EXECUTIONS.labels(status=run.status.value).inc()
        return run

    def schedule(self, thread: Thread, action: ActionSpec, rule_id: uuid.UUID | None) -> ScheduledAction:
        params = dict(action.params)
        delay = float(params.pop("delay_minutes", 0) or 0)
        action_type, payload = action.type, params
        if action.type == "send_scheduled_action":
            action_type = ACTION_ALIASES.get(params["action_type"], params["action_type"])
            payload = dict(params.get("payload") or {})
        item = ScheduledAction(
            workspace_id=thread.workspace_id,
            thread_id=thread.id,
            rule_id=rule_id,
            action_type=action_type,
            payload=payload,
            run_at=self.clock() + timedelta(minutes=delay),
            status=ScheduledActionStatus.pending,
            max_attempts=self.settings.scheduled_action_max_attempts,
        )
        self.db.add(item)
        self.db.flush()
        return item

    def sweep_time_elapsed(self, limit: int = 500) -> int:
        """Fire ``time_elapsed`` rules whose delay has passed. Each anchor fires once per rule.

        Threads are walked oldest anchor first in pages of ``limit``, so threads
        that already fired or fail the conditions never hide later ones.
        """
        now = self.clock()
        fired = 0
        rows = (
            self.db.query(AutomationRule)
            .filter(AutomationRule.trigger_type == TriggerType.time_elapsed, AutomationRule.enabled.is_(True))
            .all()
        )
        for row in rows:
            try:
                rule = RuleDefinition.from_model(row)
            except RuleDefinitionError as exc:
                logger.warning("Skipping invalid rule: %s", exc, extra={"rule_id": row.id})
                continue
            since = str(rule.trigger_config.get("since") or "last_customer_message_at")
            anchor_column = getattr(Thread, since, None)
            if anchor_column is None or since not in ("last_customer_message_at", "last_message_at", "created_at"):
                logger.warning("Unsupported time_elapsed anchor %s", since, extra={"rule_id": rule.id})
                continue
            cutoff = now - timedelta(minutes=float(rule.trigger_config.get("minutes") or 0))
            last: tuple[datetime, uuid.UUID] | None = None
            while True:
                query = self.db.query(Thread).filter(
                    Thread.workspace_id == rule.workspace_id,
                    Thread.status.in_((ThreadStatus.open, ThreadStatus.pending)),
                    anchor_column.is_not(None),
                    anchor_column <= cutoff,
                )
                if last is not None:
                    query = query.filter(
                        or_(anchor_column > last[0], and_(anchor_column == last[0], Thread.id > last[1]))
                    )
                threads = query.order_by(anchor_column, Thread.id).limit(limit).all()
                if not threads:
                    break
                last = (getattr(threads[-1], since), threads[-1].id)
                for thread in threads:
                    event = TriggerEvent(
                        trigger=TriggerType.time_elapsed,
                        workspace_id=thread.workspace_id,
                        thread_id=thread.id,
                        occurred_at=now,
                        channel=thread.channel.value if hasattr(thread.channel, "value") else thread.channel,
                        anchor_at=getattr(thread, since),
                    )
                    fired += len([run for run in self.handle(event, rules=[rule]) if run.rule_id == rule.id])
                if len(threads) < limit:
                    break
        return fired


def _final_status(run: RuleRun) -> ExecutionStatus:
    if run.errors and run.succeeded:
        return ExecutionStatus.partial
    if run.errors:
        return ExecutionStatus.failed
    if run.succeeded:
        return ExecutionStatus.succeeded
    return ExecutionStatus.skipped
