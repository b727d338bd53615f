import math
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from conftest import FakeProvider
from metahub.persistence.models import (
    AIReplyLog,
    AIReplyStatus,
    EventType,
    Thread,
    ThreadAIState,
    UsageRecord,
    ensure_utc,
)
from metahub.services.ai_reply import (
    AIReplyOrchestrator,
    ReplyReason,
    contains_handoff_keyword,
    normalize_recipient,
    reply_stats,
    within_active_hours,
)
from metahub.services.handoff import HandoffService
from metahub.services.rate_limit_store import InMemoryRateLimitStore
from metahub.services.usage_tracker import usage_tracker

NOW = datetime(2026, 3, 2, 9, 31, tzinfo=timezone.utc)


@pytest.fixture()
def make_orchestrator(db_session, sender, provider):
    def _make(sender=sender, provider=provider):
        clock = lambda: NOW  # noqa: E731
        return AIReplyOrchestrator(
            db_session,
            sender=sender,
            rate_limits=InMemoryRateLimitStore(clock),
            provider_factory=lambda ai, settings: provider,
            clock=clock,
        )

    return _make


def _logs(db_session, thread):
    return db_session.query(AIReplyLog).filter_by(thread_id=thread.id).order_by(AIReplyLog.created_at).all()


def _usage(db_session, thread):
    return db_session.query(UsageRecord).filter_by(workspace_id=thread.workspace_id).all()


def _configure(db_session, ai_settings, **fields):
    for key, value in fields.items():
        setattr(ai_settings, key, value)
    db_session.commit()


# ── Pure helpers ────────────────────────────────────────────────────


def _hours(start, end, tz="UTC", enabled=True):
    return SimpleNamespace(
        active_hours_enabled=enabled, active_hours_start=start, active_hours_end=end, active_timezone=tz
    )


def test_active_hours_window():
    assert within_active_hours(_hours("09:00", "17:00"), NOW)
    assert not within_active_hours(_hours("18:00", "22:00"), NOW)
    assert within_active_hours(_hours("09:31", "09:31"), NOW)
    assert within_active_hours(_hours("18:00", "22:00", enabled=False), NOW)


def test_active_hours_wrap_past_midnight():
    assert within_active_hours(_hours("22:00", "10:00"), NOW)
    assert not within_active_hours(_hours("22:00", "09:00"), NOW)


def test_active_hours_use_workspace_timezone():
    # 09:31 UTC is 18:31 in Tokyo
    assert within_active_hours(_hours("18:00", "22:00", tz="Asia/Tokyo"), NOW)


def test_bad_active_hours_config_is_treated_as_always_active():
    assert within_active_hours(_hours("9am", "5pm"), NOW)
    assert within_active_hours(_hours("09:00", "10:00", tz="Mars/Olympus"), NOW)


def test_handoff_keywords_and_recipient_normalization():
    assert contains_handoff_keyword("Can I talk to a HUMAN please", ["human"])
    assert not contains_handoff_keyword("thanks", ["human", "", None])
    assert normalize_recipient("+1 (555) 000-1111") == "15550001111"


# ── Preconditions ───────────────────────────────────────────────────


def test_replies_and_records_everything(db_session, thread, ai_settings, make_orchestrator, sender, provider, make_event):
    thread.last_customer_message_at = NOW - timedelta(minutes=1)
    db_session.commit()

    outcome = make_orchestrator().maybe_reply(thread.id, make_event())

    assert outcome.replied
    assert outcome.text == "Your order ships tomorrow."
    assert sender.sent == [("15550001111", "Your order ships tomorrow.")]
    assert "Customer name: Dana" in provider.prompts[0].system
    [log] = _logs(db_session, thread)
    assert log.status == AIReplyStatus.success
    assert (log.tokens_in, log.tokens_out) == (12, 8)
    [usage] = _usage(db_session, thread)
    assert usage.provider == "OpenAI"
    db_session.expire_all()
    assert ensure_utc(db_session.get(Thread, thread.id).first_response_at) == NOW
    state = db_session.query(ThreadAIState).filter_by(thread_id=thread.id).one()
    assert state.message_count == 1
    assert [turn["role"] for turn in state.context_window] == ["user", "assistant"]


def test_context_window_feeds_the_next_prompt(db_session, thread, ai_settings, make_orchestrator, provider, make_event):
    orchestrator = make_orchestrator()
    orchestrator.maybe_reply(thread.id, make_event(text="first question"))
    orchestrator.maybe_reply(thread.id, make_event(text="second question"))

    assert provider.prompts[1].history == [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "Your order ships tomorrow."},
    ]


@pytest.mark.parametrize(
    "overrides",
    [
        {"text": None},
        {"text": "   "},
        {"event_type": EventType.status, "status": "read"},
    ],
)
def test_non_messages_are_not_logged(db_session, thread, ai_settings, make_orchestrator, make_event, overrides):
    outcome = make_orchestrator().maybe_reply(thread.id, make_event(**overrides))
    assert outcome.reason == ReplyReason.not_a_message
    assert _logs(db_session, thread) == []


def test_unknown_thread(db_session, ai_settings, make_orchestrator, make_event):
    outcome = make_orchestrator().maybe_reply(uuid.uuid4(), make_event())
    assert outcome.reason == ReplyReason.thread_not_found


def test_workspace_without_settings_or_disabled(db_session, thread, make_orchestrator, make_event, sender):
    assert make_orchestrator().maybe_reply(thread.id, make_event()).reason == ReplyReason.workspace_disabled
    assert _logs(db_session, thread) == []
    assert sender.sent == []


def test_disabled_settings(db_session, thread, ai_settings, make_orchestrator, make_event):
    _configure(db_session, ai_settings, enabled=False)
    assert make_orchestrator().maybe_reply(thread.id, make_event()).reason == ReplyReason.workspace_disabled


def test_thread_disabled(db_session, thread, ai_settings, make_orchestrator, make_event, sender):
    thread.ai_enabled = False
    db_session.commit()

    outcome = make_orchestrator().maybe_reply(thread.id, make_event())

    assert outcome.reason == ReplyReason.thread_disabled
    assert [log.reason for log in _logs(db_session, thread)] == ["thread_disabled"]
    assert sender.sent == []


def test_handoff_active(db_session, thread, ai_settings, make_orchestrator, make_event):
    HandoffService(db_session).handoff(thread.workspace_id, thread.id, "manual")
    db_session.commit()
    assert make_orchestrator().maybe_reply(thread.id, make_event()).reason == ReplyReason.handoff_active


def test_monthly_cap(db_session, thread, ai_settings, make_orchestrator, make_event, provider):
    _configure(db_session, ai_settings, monthly_token_cap=10)
    usage_tracker.record(
        db_session, workspace_id=thread.workspace_id, provider="OpenAI", tokens_in=15, tokens_out=5, at=NOW
    )

    assert make_orchestrator().maybe_reply(thread.id, make_event()).reason == ReplyReason.cap_exceeded
    assert provider.prompts == []


def test_usage_from_last_month_does_not_count_against_the_cap(
    db_session, thread, ai_settings, make_orchestrator, make_event
):
    _configure(db_session, ai_settings, monthly_token_cap=10)
    usage_tracker.record(
        db_session,
        workspace_id=thread.workspace_id,
        provider="OpenAI",
        tokens_in=500,
        tokens_out=500,
        at=NOW - timedelta(days=5),
    )
    assert make_orchestrator().maybe_reply(thread.id, make_event()).replied


def test_sandbox_whitelist(db_session, thread, ai_settings, make_orchestrator, make_event):
    _configure(db_session, ai_settings, sandbox_enabled=True, sandbox_whitelist=["+1 555 000 2222"])
    orchestrator = make_orchestrator()
    assert orchestrator.maybe_reply(thread.id, make_event()).reason == ReplyReason.sandbox_blocked

    _configure(db_session, ai_settings, sandbox_whitelist=["+1 (555) 000-1111"])
    assert orchestrator.maybe_reply(thread.id, make_event()).replied


def test_outside_active_hours(db_session, thread, ai_settings, make_orchestrator, make_event):
    _configure(
        db_session, ai_settings, active_hours_enabled=True, active_hours_start="18:00", active_hours_end="22:00"
    )
    assert make_orchestrator().maybe_reply(thread.id, make_event()).reason == ReplyReason.outside_active_hours


def test_cooldown(db_session, thread, ai_settings, make_orchestrator, make_event):
    _configure(db_session, ai_settings, cooldown_seconds=60)
    orchestrator = make_orchestrator()

    assert orchestrator.maybe_reply(thread.id, make_event()).replied
    assert orchestrator.maybe_reply(thread.id, make_event()).reason == ReplyReason.rate_limited


def test_thread_message_limit(db_session, thread, ai_settings, make_orchestrator, make_event):
    _configure(db_session, ai_settings, max_messages_per_thread=1)
    orchestrator = make_orchestrator()

    assert orchestrator.maybe_reply(thread.id, make_event()).replied
    assert orchestrator.maybe_reply(thread.id, make_event()).reason == ReplyReason.thread_limit_reached


def test_handoff_keyword_hands_off(db_session, thread, ai_settings, make_orchestrator, make_event, sender, provider):
    _configure(db_session, ai_settings, handoff_message="Connecting you to a teammate.")
    orchestrator = make_orchestrator()

    outcome = orchestrator.maybe_reply(thread.id, make_event(text="Can I talk to a human?"))

    assert outcome.reason == ReplyReason.handoff_requested
    assert provider.prompts == []
    assert sender.sent == [("15550001111", "Connecting you to a teammate.")]
    state = db_session.query(ThreadAIState).filter_by(thread_id=thread.id).one()
    db_session.refresh(state)
    assert state.handed_off
    assert _logs(db_session, thread)[0].status == AIReplyStatus.handoff
    assert orchestrator.maybe_reply(thread.id, make_event()).reason == ReplyReason.handoff_active


# ── Failures record no usage ────────────────────────────────────────


def test_provider_failure(db_session, thread, ai_settings, make_orchestrator, failing_provider, make_event, sender):
    outcome = make_orchestrator(provider=failing_provider).maybe_reply(thread.id, make_event())

    assert outcome.reason == ReplyReason.provider_failed
    assert sender.sent == []
    assert _usage(db_session, thread) == []
    [log] = _logs(db_session, thread)
    assert log.status == AIReplyStatus.failed
    assert "400" in log.error_message


def test_empty_provider_reply_is_a_failure(db_session, thread, ai_settings, make_orchestrator, make_event):
    outcome = make_orchestrator(provider=FakeProvider(text="")).maybe_reply(thread.id, make_event())
    assert outcome.reason == ReplyReason.provider_failed
    assert _usage(db_session, thread) == []


def test_send_failure(db_session, thread, ai_settings, make_orchestrator, failing_sender, make_event):
    thread.last_customer_message_at = NOW
    db_session.commit()

    outcome = make_orchestrator(sender=failing_sender).maybe_reply(thread.id, make_event())

    assert outcome.reason == ReplyReason.send_failed
    assert _usage(db_session, thread) == []
    db_session.expire_all()
    assert db_session.get(Thread, thread.id).first_response_at is None
    state = db_session.query(ThreadAIState).filter_by(thread_id=thread.id).one()
    assert state.message_count == 0


def test_no_sender_configured(db_session, thread, ai_settings, make_orchestrator, make_event):
    outcome = make_orchestrator(sender=None).maybe_reply(thread.id, make_event())
    assert outcome.reason == ReplyReason.send_failed
    assert _usage(db_session, thread) == []


def test_missing_provider_usage_is_estimated(db_session, thread, ai_settings, make_orchestrator, make_event):
    provider = FakeProvider(usage=(None, None))

    make_orchestrator(provider=provider).maybe_reply(thread.id, make_event())

    [usage] = _usage(db_session, thread)
    assert usage.tokens_out == math.ceil(len("Your order ships tomorrow.") / 4)
    assert usage.tokens_in > 0


def test_reply_stats(db_session, thread, ai_settings, make_orchestrator, failing_provider, make_event):
    make_orchestrator().maybe_reply(thread.id, make_event())
    make_orchestrator(provider=failing_provider).maybe_reply(thread.id, make_event())

    stats = reply_stats(db_session, thread.workspace_id)

    assert stats["total"] == 2
    assert stats["success"] == 1
    assert stats["failed"] == 1
    assert stats["success_rate"] == 0.5
    assert stats["tokens"] == 20
