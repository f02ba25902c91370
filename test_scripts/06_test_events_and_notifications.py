#!/usr/bin/env python3
"""
Test: Events, Notifications and Overdue Monitor
Purpose: Test what happens after workflow changes are committed

Tests:
- Event bus publishing, fan-out and handler isolation
- Notification handlers for activation, completion and cancellation
- Notification listing and read flags
- Overdue monitor announces each overdue step once, retrying when the bus is full
"""

import asyncio
import sys
from datetime import datetime

from fixtures import (
    run_tests, TestContext, EventCollector, FrozenClock, create_test_template,
    start_test_workflow, step_by_title, assert_equal, assert_true, assert_false,
    assert_raises_async,
)

from backoffice.core import EventBus, NotificationService, OverdueMonitor, NotFoundError
from backoffice.core.events import register_event_handlers
from backoffice.models.schemas import EventType, NotificationKind


async def test_event_publishing_and_fan_out():
    bus = EventBus()
    first, second = EventCollector(), EventCollector()
    bus.subscribe(EventType.STEP_COMPLETED, first.handler)
    bus.subscribe(EventType.STEP_COMPLETED, second.handler)

    await bus.start()
    try:
        await bus.publish(EventType.STEP_COMPLETED, {"step_id": "s-1"})
        await bus.publish(EventType.STEP_SKIPPED, {"step_id": "s-2"})
        await bus.drain()

        assert_equal(first.count(), 1)
        assert_equal(second.count(), 1)
        assert_true(first.find_event(step_id="s-1") is not None)
        assert_equal(first.find_event(step_id="s-2"), None, "Other event types not delivered")
    finally:
        await bus.stop()


async def test_handler_failure_is_isolated():
    bus = EventBus()
    collector = EventCollector()

    async def broken_handler(data):
        raise RuntimeError("handler exploded")

    bus.subscribe(EventType.WORKFLOW_COMPLETED, broken_handler)
    bus.subscribe(EventType.WORKFLOW_COMPLETED, collector.handler)

    await bus.start()
    try:
        await bus.publish(EventType.WORKFLOW_COMPLETED, {"workflow_id": "wf-1"})
        await bus.drain()

        assert_equal(collector.count(), 1, "Healthy handler still runs")
        stats = bus.get_stats()
        assert_equal(stats["failed"], 1)
        assert_equal(stats["handled"], 1)
        assert_true(stats["running"])
    finally:
        await bus.stop()

    assert_false(bus.get_stats()["running"])


async def test_publish_to_full_queue_raises():
    bus = EventBus(max_queue_size=1)
    await bus.publish(EventType.STEP_OVERDUE, {"step_id": "s-1"})
    await assert_raises_async(asyncio.QueueFull, bus.publish(EventType.STEP_OVERDUE, {"step_id": "s-2"}))


async def test_step_activation_notifies_assignee():
    async with TestContext() as ctx:
        register_event_handlers(ctx.event_bus, ctx.db)

        async with ctx.get_session() as session:
            template = await create_test_template(session)
        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id, assignee_id="user-5")

        await ctx.event_bus.publish(EventType.STEP_ACTIVATED, step_by_title(workflow, "A").to_event_data())
        await ctx.event_bus.drain()

        async with ctx.get_session() as session:
            notifications = await NotificationService(session).list_for_user("user-5")

        assert_equal(len(notifications), 1)
        assert_equal(notifications[0].kind, NotificationKind.STEP_ASSIGNED.value)
        assert_equal(notifications[0].title, "Step ready: A")
        assert_equal(notifications[0].message, "Due 2026-01-01")
        assert_equal(notifications[0].link, f"/workflows/{workflow.id}")
        assert_false(notifications[0].is_read)


async def test_workflow_completion_notifies_every_assignee():
    async with TestContext() as ctx:
        register_event_handlers(ctx.event_bus, ctx.db)

        async with ctx.get_session() as session:
            template = await create_test_template(session)
        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id, customer_business_id="cb-42")
            await engine.update_step_details(step_by_title(workflow, "C").id, assignee_id="user-2")
            workflow = await engine.cancel_workflow(workflow.id)

        payload = workflow.to_event_data()
        assert_equal(payload["assignee_ids"], ["user-1", "user-2"])

        await ctx.event_bus.publish(EventType.WORKFLOW_CANCELLED, payload)
        await ctx.event_bus.drain()

        async with ctx.get_session() as session:
            service = NotificationService(session)
            for user_id in ("user-1", "user-2"):
                notifications = await service.list_for_user(user_id)
                assert_equal(len(notifications), 1, f"{user_id} should be notified once")
                assert_equal(notifications[0].kind, NotificationKind.WORKFLOW_CANCELLED.value)
                assert_equal(notifications[0].title, "Workflow cancelled for cb-42")


async def test_notification_read_flags():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            service = NotificationService(session)
            first = await service.notify("user-1", NotificationKind.STEP_OVERDUE, "First")
            await service.notify("user-1", NotificationKind.STEP_ASSIGNED, "Second")
            await service.notify("user-2", NotificationKind.STEP_ASSIGNED, "Someone else's")

            read = await service.mark_read(first.id, "user-1")
            assert_true(read.is_read)

            unread = await service.list_for_user("user-1", unread_only=True)
            assert_equal([n.title for n in unread], ["Second"])
            assert_equal(len(await service.list_for_user("user-1")), 2)

            await assert_raises_async(NotFoundError, service.mark_read(first.id, "user-2"))


async def test_overdue_monitor_announces_once():
    async with TestContext() as ctx:
        register_event_handlers(ctx.event_bus, ctx.db)
        collector = EventCollector()
        ctx.event_bus.subscribe(EventType.STEP_OVERDUE, collector.handler)

        async with ctx.get_session() as session:
            template = await create_test_template(session)
        async with ctx.engine() as engine:
            overdue = await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 1))
            await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 20))

        monitor = OverdueMonitor(ctx.db, ctx.event_bus, clock=FrozenClock(datetime(2026, 1, 10)))

        assert_equal(await monitor.check_overdue_steps(), 1)
        assert_equal(await monitor.check_overdue_steps(), 0, "Already announced")
        await ctx.event_bus.drain()

        assert_equal(collector.count(), 1)
        assert_equal(collector.events[0]["workflow_id"], overdue.id)

        async with ctx.get_session() as session:
            notifications = await NotificationService(session).list_for_user("user-1")
        assert_equal([n.kind for n in notifications], [NotificationKind.STEP_OVERDUE.value])
        assert_equal(notifications[0].message, "Was due 2026-01-01")


async def test_overdue_monitor_due_now_is_not_overdue():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)
        async with ctx.engine() as engine:
            await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 1))

        monitor = OverdueMonitor(ctx.db, None, clock=FrozenClock(datetime(2026, 1, 1)))
        assert_equal(await monitor.check_overdue_steps(), 0)


async def test_overdue_announcement_retried_after_full_queue():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)
        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 1))

        bus = EventBus(max_queue_size=1)
        await bus.publish(EventType.WORKFLOW_STARTED, {"workflow_id": "other"})
        collector = EventCollector()
        bus.subscribe(EventType.STEP_OVERDUE, collector.handler)

        monitor = OverdueMonitor(ctx.db, bus, clock=FrozenClock(datetime(2026, 1, 10)))
        assert_equal(await monitor.check_overdue_steps(), 0, "Queue full, nothing announced")

        async with ctx.engine() as engine:
            step_a = await engine.get_step(step_by_title(workflow, "A").id)
        assert_equal(step_a.overdue_notified_at, None, "Flag released for the next check")

        await bus.start()
        try:
            await bus.drain()
            assert_equal(await monitor.check_overdue_steps(), 1)
            await bus.drain()
        finally:
            await bus.stop()

        assert_equal(collector.count(), 1)
        assert_equal(collector.events[0]["step_id"], step_a.id)


async def test_resolved_step_is_never_flagged_overdue():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)
        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 1))

        step_a = step_by_title(workflow, "A")
        async with ctx.engine() as engine:
            await engine.complete_step(step_a.id, "user-1")

        async with ctx.engine() as engine:
            assert_false(await engine.mark_overdue_notified(step_a.id, now=datetime(2026, 1, 10)))

        async with ctx.engine() as engine:
            await engine.cancel_workflow(workflow.id)
            step_b = step_by_title(workflow, "B")
            assert_false(await engine.mark_overdue_notified(step_b.id, now=datetime(2026, 1, 10)))


async def test_overdue_monitor_lifecycle():
    async with TestContext() as ctx:
        monitor = OverdueMonitor(ctx.db, ctx.event_bus, check_interval=60)

        await monitor.start()
        assert_true(monitor.running)
        await asyncio.sleep(0.1)
        await monitor.stop()
        assert_false(monitor.running)


async def main():
    return await run_tests("Event, Notification and Overdue Monitor Tests", [
        ("Event publishing and fan-out", test_event_publishing_and_fan_out),
        ("Handler failure is isolated", test_handler_failure_is_isolated),
        ("Publish to full queue raises", test_publish_to_full_queue_raises),
        ("Step activation notifies assignee", test_step_activation_notifies_assignee),
        ("Workflow cancellation notifies every assignee", test_workflow_completion_notifies_every_assignee),
        ("Notification read flags", test_notification_read_flags),
        ("Overdue monitor announces once", test_overdue_monitor_announces_once),
        ("Due now is not overdue", test_overdue_monitor_due_now_is_not_overdue),
        ("Overdue announcement retried after full queue", test_overdue_announcement_retried_after_full_queue),
        ("Resolved step is never flagged overdue", test_resolved_step_is_never_flagged_overdue),
        ("Overdue monitor lifecycle", test_overdue_monitor_lifecycle),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
