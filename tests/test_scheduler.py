import dataclasses
from datetime import timedelta

import pytest

from metahub.config.settings import get_settings
from metahub.persistence.models import AutomationRule, Priority, TriggerType, now_utc
from metahub.services.scheduler import AutomationScheduler


def test_sweep_records_breaches_and_fires_time_elapsed_rules(db_session, session_factory, thread):
    thread.priority = Priority.high
    thread.last_customer_message_at = now_utc() - timedelta(hours=1)
    db_session.add(
        AutomationRule(
            workspace_id=thread.workspace_id,
            name="Stale",
            trigger_type=TriggerType.time_elapsed,
            trigger_config={"minutes": 30},
            actions=[{"type": "add_tag", "tag": "stale"}],
        )
    )
    db_session.commit()
    scheduler = AutomationScheduler(session_factory)

    assert scheduler.sweep() == (1, 1)
    assert scheduler.sweep() == (0, 0)

    db_session.expire_all()
    assert thread.sla_status == "breached"


def test_sweep_with_nothing_to_do(session_factory, thread):
    assert AutomationScheduler(session_factory).sweep() == (0, 0)


@pytest.mark.asyncio
async def test_start_respects_disabled_flag(session_factory):
    settings = dataclasses.replace(get_settings(), scheduler_enabled=False)
    scheduler = AutomationScheduler(session_factory, settings=settings)

    await scheduler.start()

    assert not scheduler.running


@pytest.mark.asyncio
async def test_start_registers_jobs_and_stops(session_factory):
    settings = dataclasses.replace(get_settings(), scheduler_enabled=True)
    scheduler = AutomationScheduler(session_factory, settings=settings)

    await scheduler.start()
    try:
        assert scheduler.running
        assert {job.id for job in scheduler._scheduler.get_jobs()} == {"scheduled-actions", "sla-and-time-elapsed"}
    finally:
        await scheduler.stop()

    assert not scheduler.running
