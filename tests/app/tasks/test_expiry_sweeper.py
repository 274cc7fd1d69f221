"""Tests for the expiry sweeper."""

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from app.channels.gateway import RealtimeGateway
from app.constants.chat import SessionStatus
from app.tasks.expiry_sweeper import run_expiry_sweeper, sweep_once
from app.utils.clock import utcnow


def _factory(session_factory):
    @contextmanager
    def scope():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return scope


async def test_sweep_once_expires_due_sessions(session_factory, setup_pending_session):
    expired = await sweep_once(
        RealtimeGateway(),
        now=utcnow() + timedelta(days=1),
        session_factory=_factory(session_factory),
    )
    assert [s.id for s in expired] == [setup_pending_session.id]
    assert expired[0].status == SessionStatus.EXPIRED


async def test_sweep_once_leaves_fresh_sessions(session_factory, setup_pending_session):
    expired = await sweep_once(
        RealtimeGateway(), now=utcnow(), session_factory=_factory(session_factory)
    )
    assert expired == []


async def test_run_expiry_sweeper_stops_on_event(session_factory):
    stop = asyncio.Event()
    task = asyncio.create_task(
        run_expiry_sweeper(RealtimeGateway(), 0.01, stop, _factory(session_factory))
    )
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()
