"""
AI auto-reply orchestration.

``maybe_reply`` walks an ordered list of preconditions and stops at the first
one that fails, returning a distinct :class:`ReplyReason`. Only when all pass
is the provider called. Usage is recorded after the reply has actually been
delivered; a failed provider call or a failed send records nothing.
"""
from __future__ import annotations

import enum
import logging
import re
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from metahub.config.settings import Settings, get_settings
from metahub.errors import ChannelSendFailed, ProviderCallFailed
from metahub.monitoring.metrics import AI_REPLIES
from metahub.persistence.models import (
    AIReplyLog,
    AIReplySettings,
    AIReplyStatus,
    Thread,
    ThreadAIState,
    now_utc,
)
from metahub.providers.base import Prompt, ServiceProvider
from metahub.providers.registry import build_reply_provider
from metahub.services.channel_sender import ChannelSender, resolve_target
from metahub.services.handoff import HandoffService
from metahub.services.rate_limit_store import InMemoryRateLimitStore, RateLimitStore
from metahub.services.sla import SLAService
from metahub.services.threads import ThreadStore
from metahub.services.usage_tracker import UsageTracker, estimate_tokens, usage_tracker
from metahub.webhooks.events import InboundEvent

logger = logging.getLogger(__name__)

CONTEXT_WINDOW_TURNS = 10
DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and professional customer support assistant. "
    "Answer clearly and concisely in the language the customer uses."
)

_provider_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="ai-provider")


class ReplyReason(str, enum.Enum):
    replied = "replied"
    not_a_message = "not_a_message"
    thread_not_found = "thread_not_found"
    workspace_disabled = "workspace_disabled"
    thread_disabled = "thread_disabled"
    handoff_active = "handoff_active"
    cap_exceeded = "cap_exceeded"
    sandbox_blocked = "sandbox_blocked"
    outside_active_hours = "outside_active_hours"
    rate_limited = "rate_limited"
    thread_limit_reached = "thread_limit_reached"
    handoff_requested = "handoff_requested"
    provider_failed = "provider_failed"
    send_failed = "send_failed"


_UNLOGGED = {ReplyReason.not_a_message, ReplyReason.thread_not_found, ReplyReason.workspace_disabled}


@dataclass(frozen=True)
class ReplyOutcome:
    replied: bool
    reason: ReplyReason
    text: str | None = None


ProviderFactory = Callable[[AIReplySettings, Settings], ServiceProvider]


def normalize_recipient(value: str) -> str:
    return re.sub(r"[^0-9A-Za-z]", "", value or "")


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def within_active_hours(ai_settings: AIReplySettings, now: datetime) -> bool:
    """Inclusive window in the workspace timezone; start > end wraps past midnight."""
    if not ai_settings.active_hours_enabled:
        return True
    if not ai_settings.active_hours_start or not ai_settings.active_hours_end:
        return True
    try:
        local = now.astimezone(ZoneInfo(ai_settings.active_timezone or "UTC"))
        current = local.hour * 60 + local.minute
        start = _minutes(ai_settings.active_hours_start)
        end = _minutes(ai_settings.active_hours_end)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Invalid active hours config, treating as always active")
        return True
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def contains_handoff_keyword(text: str, keywords: list[str]) -> bool:
    lowered = text.lower()
    return any(isinstance(k, str) and k.strip() and k.lower() in lowered for k in keywords)


def build_system_prompt(ai_settings: AIReplySettings, contact_name: str | None) -> str:
    prompt = ai_settings.system_prompt or DEFAULT_SYSTEM_PROMPT
    if contact_name:
        prompt += f"\n\nCustomer name: {contact_name}"
    return prompt


class AIReplyOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        sender: ChannelSender | None = None,
        rate_limits: RateLimitStore | None = None,
        provider_factory: ProviderFactory = build_reply_provider,
        settings: Settings | None = None,
        usage: UsageTracker = usage_tracker,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.db = db
        self.sender = sender
        self.rate_limits = rate_limits or InMemoryRateLimitStore()
        self.provider_factory = provider_factory
        self.settings = settings or get_settings()
        self.usage = usage
        self.clock = clock
        self.handoffs = HandoffService(db)

    def settings_for(self, workspace_id: uuid.UUID) -> AIReplySettings | None:
        return self.db.query(AIReplySettings).filter(AIReplySettings.workspace_id == workspace_id).first()

    @staticmethod
    def cooldown_key(thread_id: uuid.UUID) -> str:
        return f"ai-cooldown:{thread_id}"

    # ── Decision ───────────────────────────────────────────────────────────────

    def _check(
        self, thread: Thread, event: InboundEvent, ai_settings: AIReplySettings | None, state: ThreadAIState | None
    ) -> ReplyReason | None:
        if ai_settings is None or not ai_settings.enabled:
            return ReplyReason.workspace_disabled
        if not thread.ai_enabled:
            return ReplyReason.thread_disabled
        if state.handed_off:
            return ReplyReason.handoff_active
        cap = ai_settings.monthly_token_cap
        if cap is not None and self.usage.monthly_tokens(self.db, thread.workspace_id, self.clock()) >= cap:
            return ReplyReason.cap_exceeded
        if ai_settings.sandbox_enabled:
            whitelist = {normalize_recipient(item) for item in ai_settings.sandbox_whitelist or []}
            if normalize_recipient(event.sender_id) not in whitelist:
                return ReplyReason.sandbox_blocked
        if not within_active_hours(ai_settings, self.clock()):
            return ReplyReason.outside_active_hours
        if (ai_settings.cooldown_seconds or 0) > 0 and self.rate_limits.peek(self.cooldown_key(thread.id)):
            return ReplyReason.rate_limited
        limit = ai_settings.max_messages_per_thread
        if limit is not None and (state.message_count or 0) >= limit:
            return ReplyReason.thread_limit_reached
        if contains_handoff_keyword(event.text or "", ai_settings.handoff_keywords or []):
            return ReplyReason.handoff_requested
        return None

    def maybe_reply(self, thread_id: uuid.UUID, event: InboundEvent) -> ReplyOutcome:
        if not event.is_customer_message or not (event.text or "").strip():
            return self._finish(None, event, ReplyReason.not_a_message)
        thread = ThreadStore(self.db).get(event.workspace_id, thread_id)
        if thread is None:
            return self._finish(None, event, ReplyReason.thread_not_found)
        self.db.refresh(thread)

        ai_settings = self.settings_for(thread.workspace_id)
        state = None
        if ai_settings is not None and ai_settings.enabled:
            state = self.handoffs.state(thread.workspace_id, thread.id)

        reason = self._check(thread, event, ai_settings, state)
        if reason == ReplyReason.handoff_requested:
            self._hand_off(thread, event, ai_settings)
            return self._finish(thread, event, reason, status=AIReplyStatus.handoff)
        if reason is not None:
            return self._finish(thread, event, reason)
        return self._generate(thread, event, ai_settings, state)

    # ── Actions ────────────────────────────────────────────────────────────────

    def _hand_off(self, thread: Thread, event: InboundEvent, ai_settings: AIReplySettings) -> None:
        self.handoffs.handoff(thread.workspace_id, thread.id, "User requested human agent")
        self.db.commit()
        if ai_settings.handoff_message and self.sender is not None:
            try:
                target = resolve_target(self.db, thread, self.settings.whatsapp_token)
                self.sender.send_text(target, ai_settings.handoff_message)
            except ChannelSendFailed as exc:
                logger.warning("Handoff message not sent: %s", exc, extra={"thread_id": thread.id})

    def _generate(
        self, thread: Thread, event: InboundEvent, ai_settings: AIReplySettings, state: ThreadAIState
    ) -> ReplyOutcome:
        history = list(state.context_window or [])[-CONTEXT_WINDOW_TURNS:]
        prompt = Prompt(
            message=event.text,
            system=build_system_prompt(ai_settings, thread.contact_name or event.contact_name),
            history=history,
            model=ai_settings.model,
            max_tokens=ai_settings.max_tokens,
            temperature=ai_settings.temperature,
        )

        started = time.perf_counter()
        try:
            provider = self.provider_factory(ai_settings, self.settings)
            future = _provider_pool.submit(provider.call, prompt)
            reply = future.result(timeout=self.settings.ai_provider_timeout_seconds)
            if not reply.text:
                raise ProviderCallFailed("provider returned an empty reply")
        except FutureTimeout:
            return self._finish(
                thread, event, ReplyReason.provider_failed, status=AIReplyStatus.failed,
                error=f"provider timed out after {self.settings.ai_provider_timeout_seconds}s",
            )
        except Exception as exc:
            logger.warning("AI provider call failed: %s", exc, extra={"thread_id": thread.id})
            return self._finish(thread, event, ReplyReason.provider_failed, status=AIReplyStatus.failed, error=str(exc))
        latency_ms = int((time.perf_counter() - started) * 1000)

        if self.sender is None:
            return self._finish(
                thread, event, ReplyReason.send_failed, status=AIReplyStatus.failed, error="no channel sender"
            )
        try:
            target = resolve_target(self.db, thread, self.settings.whatsapp_token)
            self.sender.send_text(target, reply.text)
        except ChannelSendFailed as exc:
            logger.warning("AI reply not delivered: %s", exc, extra={"thread_id": thread.id})
            return self._finish(thread, event, ReplyReason.send_failed, status=AIReplyStatus.failed, error=str(exc))

        sent_at = self.clock()
        tokens_in = reply.tokens_in if reply.tokens_in is not None else estimate_tokens(
            "\n".join([prompt.system or ""] + [turn.get("content", "") for turn in history] + [prompt.message])
        )
        tokens_out = reply.tokens_out if reply.tokens_out is not None else estimate_tokens(reply.text)
        self.usage.record(
            self.db,
            workspace_id=thread.workspace_id,
            provider=provider.provider_type,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=provider.estimate_cost(tokens_in, tokens_out),
            at=sent_at,
        )

        context = history + [
            {"role": "user", "content": event.text},
            {"role": "assistant", "content": reply.text},
        ]
        self.db.execute(
            update(ThreadAIState)
            .where(ThreadAIState.id == state.id)
            .values(
                message_count=ThreadAIState.message_count + 1,
                last_ai_reply_at=sent_at,
                context_window=context[-CONTEXT_WINDOW_TURNS:],
            )
            .execution_options(synchronize_session=False)
        )
        ThreadStore(self.db).record_outbound(thread.id, sent_at)
        SLAService(self.db).mark_first_response(thread.id, thread.workspace_id, sent_at)
        if ai_settings.cooldown_seconds:
            self.rate_limits.hit(self.cooldown_key(thread.id), ai_settings.cooldown_seconds)

        return self._finish(
            thread,
            event,
            ReplyReason.replied,
            status=AIReplyStatus.success,
            response=reply.text,
            provider=provider.provider_type,
            model=reply.model or ai_settings.model,
            tokens=(tokens_in, tokens_out),
            latency_ms=latency_ms,
        )

    def _finish(
        self,
        thread: Thread | None,
        event: InboundEvent,
        reason: ReplyReason,
        *,
        status: AIReplyStatus = AIReplyStatus.skipped,
        response: str | None = None,
        error: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        tokens: tuple[int, int] = (0, 0),
        latency_ms: int | None = None,
    ) -> ReplyOutcome:
        AI_REPLIES.labels(reason=reason.value).inc()
        if thread is not None and reason not in _UNLOGGED:
            self.db.add(
                AIReplyLog(
                    workspace_id=thread.workspace_id,
                    thread_id=thread.id,
                    external_message_id=event.external_message_id,
                    status=status,
                    reason=reason.value,
                    input_message=event.text,
                    ai_response=response,
                    provider=provider,
                    model=model,
                    tokens_in=tokens[0],
                    tokens_out=tokens[1],
                    latency_ms=latency_ms,
                    error_message=error,
                )
            )
            self.db.commit()
        logger.info(
            "AI reply decision: %s",
            reason.value,
            extra={"workspace_id": event.workspace_id, "thread_id": thread.id if thread else None},
        )
        return ReplyOutcome(replied=reason == ReplyReason.replied, reason=reason, text=response)


def reply_stats(db: Session, workspace_id: uuid.UUID, days: int = 7) -> dict:
    since = now_utc() - timedelta(days=days)
    rows = (
        db.query(
            AIReplyLog.status,
            func.count(AIReplyLog.id),
            func.coalesce(func.sum(AIReplyLog.tokens_in + AIReplyLog.tokens_out), 0),
            func.avg(AIReplyLog.latency_ms),
        )
        .filter(AIReplyLog.workspace_id == workspace_id, AIReplyLog.created_at >= since)
        .group_by(AIReplyLog.status)
        .all()
    )
    counts = {AIReplyStatus(status).value: count for status, count, _, _ in rows}
    tokens = sum(int(total) for _, _, total, _ in rows)
    latency = next((avg for status, _, _, avg in rows if AIReplyStatus(status) == AIReplyStatus.success), None)
    attempted = counts.get("success", 0) + counts.get("failed", 0)
    return {
        "period_days": days,
        "total": sum(counts.values()),
        "success": counts.get("success", 0),
        "failed": counts.get("failed", 0),
        "handoffs": counts.get("handoff", 0),
        "skipped": counts.get("skipped", 0),
        "success_rate": round(counts.get("success", 0) / attempted, 4) if attempted else 0.0,
        "avg_latency_ms": int(latency) if latency is not None else None,
        "tokens": tokens,
    }
