#!/usr/bin/env python3
"""
Test: REST API
Purpose: Drive the FastAPI app end to end over an in-process transport

Tests:
- Health and metrics
- Template catalog endpoints
- Workflow lifecycle through step endpoints, with events and notifications
- Error mapping (401, 404, 409, 422)
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import httpx

from fixtures import run_tests, TestContext, assert_equal, assert_true

from main import app
from backoffice.models import get_db
from backoffice.core import OverdueMonitor
from backoffice.core.events import register_event_handlers

HEADERS = {"X-User-Id": "user-1"}

TEMPLATE_PAYLOAD = {
    "name": "Ad onboarding",
    "business_id": "biz-ad",
    "steps": [
        {"title": "A", "sort_order": 1, "days_from_start": 0},
        {"title": "B", "sort_order": 2, "days_from_previous": 3},
        {"title": "C", "sort_order": 3, "days_from_previous": 2},
    ],
}


@asynccontextmanager
async def api_client(ctx):
    """Wire the app to the test database, event bus and clock"""

    async def override_get_db():
        async with ctx.db.session() as session:
            yield session

    register_event_handlers(ctx.event_bus, ctx.db)
    app.state.db = ctx.db
    app.state.event_bus = ctx.event_bus
    app.state.overdue_monitor = OverdueMonitor(ctx.db, ctx.event_bus)
    app.state.clock = ctx.clock
    app.dependency_overrides[get_db] = override_get_db

    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


async def _create_template(client):
    response = await client.post("/api/workflow-templates", json=TEMPLATE_PAYLOAD)
    assert_equal(response.status_code, 201, response.text)
    return response.json()


async def _start_workflow(client, template_id, **overrides):
    payload = {
        "template_id": template_id,
        "customer_business_id": "cb-1",
        "assignee_id": "user-1",
        "start_date": "2026-01-01T00:00:00",
    }
    payload.update(overrides)
    response = await client.post("/api/workflows", json=payload, headers=HEADERS)
    assert_equal(response.status_code, 201, response.text)
    return response.json()


async def test_health_and_metrics():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            response = await client.get("/health")
            assert_equal(response.status_code, 200)
            assert_equal(response.json()["status"], "healthy")

            template = await _create_template(client)
            await _start_workflow(client, template["id"])

            metrics = (await client.get("/metrics")).json()
            assert_equal(metrics["workflows"]["by_status"], {"ACTIVE": 1})
            assert_equal(metrics["steps"]["by_status"], {"ACTIVE": 1, "PENDING": 2})
            assert_true(metrics["event_bus"]["running"])


async def test_template_endpoints():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            assert_equal([step["title"] for step in template["steps"]], ["A", "B", "C"])
            assert_true(template["is_active"])

            listed = (await client.get("/api/workflow-templates", params={"business_id": "biz-ad"})).json()
            assert_equal([t["id"] for t in listed], [template["id"]])

            response = await client.patch(
                f"/api/workflow-templates/{template['id']}", json={"name": "Renamed"}
            )
            assert_equal(response.status_code, 200)
            assert_equal(response.json()["name"], "Renamed")

            response = await client.put(
                f"/api/workflow-templates/{template['id']}/steps",
                json={"steps": [{"title": "Only", "sort_order": 1}]},
            )
            assert_equal(response.status_code, 200, response.text)
            assert_equal(len(response.json()["steps"]), 1)

            await _start_workflow(client, template["id"])

            response = await client.put(
                f"/api/workflow-templates/{template['id']}/steps",
                json={"steps": [{"title": "Other", "sort_order": 1}]},
            )
            assert_equal(response.status_code, 409, "Steps are frozen once used")

            response = await client.get("/api/workflow-templates/missing")
            assert_equal(response.status_code, 404)


async def test_template_validation():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            bad_offsets = dict(TEMPLATE_PAYLOAD)
            bad_offsets["steps"] = [{"title": "X", "sort_order": 1, "days_from_start": 1, "days_from_previous": 1}]
            response = await client.post("/api/workflow-templates", json=bad_offsets)
            assert_equal(response.status_code, 422)

            negative = dict(TEMPLATE_PAYLOAD)
            negative["steps"] = [{"title": "X", "sort_order": 1, "days_from_previous": -2}]
            response = await client.post("/api/workflow-templates", json=negative)
            assert_equal(response.status_code, 422)

            no_steps = dict(TEMPLATE_PAYLOAD, steps=[])
            response = await client.post("/api/workflow-templates", json=no_steps)
            assert_equal(response.status_code, 422)


async def test_workflow_lifecycle():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            workflow = await _start_workflow(client, template["id"])

            assert_equal(workflow["status"], "ACTIVE")
            assert_equal([s["status"] for s in workflow["steps"]], ["ACTIVE", "PENDING", "PENDING"])
            assert_equal(workflow["steps"][1]["due_date"], "2026-01-04T00:00:00")

            ctx.clock.set(datetime(2026, 1, 2))
            step_a = workflow["steps"][0]
            response = await client.post(f"/api/workflows/steps/{step_a['id']}/complete", headers=HEADERS)
            assert_equal(response.status_code, 200, response.text)
            assert_equal(response.json()["status"], "DONE")
            assert_equal(response.json()["completed_at"], "2026-01-02T00:00:00")

            response = await client.post(f"/api/workflows/steps/{step_a['id']}/complete", headers=HEADERS)
            assert_equal(response.status_code, 409, "Completing twice is a conflict")

            workflow = (await client.get(f"/api/workflows/{workflow['id']}")).json()
            assert_equal(workflow["steps"][1]["status"], "ACTIVE")
            assert_equal(workflow["steps"][1]["due_date"], "2026-01-05T00:00:00")

            response = await client.post(f"/api/workflows/steps/{workflow['steps'][1]['id']}/skip", headers=HEADERS)
            assert_equal(response.json()["status"], "SKIPPED")

            await client.post(f"/api/workflows/steps/{workflow['steps'][2]['id']}/complete", headers=HEADERS)

            workflow = (await client.get(f"/api/workflows/{workflow['id']}")).json()
            assert_equal(workflow["status"], "COMPLETED")
            assert_equal(workflow["completed_at"], "2026-01-02T00:00:00")

            await ctx.event_bus.drain()
            notifications = (await client.get("/api/notifications", headers=HEADERS)).json()
            kinds = sorted(n["kind"] for n in notifications)
            assert_equal(
                kinds,
                ["STEP_ASSIGNED", "STEP_ASSIGNED", "STEP_ASSIGNED", "WORKFLOW_COMPLETED"],
                "A, B and C assigned, then the workflow completed",
            )


async def test_start_date_with_offset_is_converted():
    """The same instant written with two offsets schedules identically"""
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            tokyo = await _start_workflow(client, template["id"], start_date="2026-01-01T00:00:00+09:00")
            utc = await _start_workflow(
                client, template["id"], customer_business_id="cb-2", start_date="2025-12-31T15:00:00Z"
            )

    expected = datetime(2025, 12, 31, 15, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    assert_equal(tokyo["started_at"], expected.isoformat())
    assert_equal(utc["started_at"], tokyo["started_at"])
    assert_equal(
        [step["due_date"] for step in tokyo["steps"]],
        [(expected + timedelta(days=days)).isoformat() for days in (0, 3, 5)],
    )
    assert_equal([step["due_date"] for step in utc["steps"]], [step["due_date"] for step in tokyo["steps"]])


async def test_cancel_endpoint():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            workflow = await _start_workflow(client, template["id"])

            response = await client.post(f"/api/workflows/{workflow['id']}/cancel", headers=HEADERS)
            assert_equal(response.status_code, 200)
            body = response.json()
            assert_equal(body["status"], "CANCELLED")
            assert_true(all(step["status"] == "SKIPPED" for step in body["steps"]))

            response = await client.post(f"/api/workflows/{workflow['id']}/cancel", headers=HEADERS)
            assert_equal(response.status_code, 409)

            response = await client.post("/api/workflows/missing/cancel", headers=HEADERS)
            assert_equal(response.status_code, 404)

            await ctx.event_bus.drain()
            notifications = (await client.get("/api/notifications", headers=HEADERS)).json()
            assert_true(any(n["kind"] == "WORKFLOW_CANCELLED" for n in notifications))


async def test_start_errors():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            payload = {"template_id": template["id"], "customer_business_id": "cb-1", "assignee_id": "user-1"}

            response = await client.post("/api/workflows", json=payload)
            assert_equal(response.status_code, 401, "X-User-Id is required")

            response = await client.post(
                "/api/workflows", json=dict(payload, template_id="missing"), headers=HEADERS
            )
            assert_equal(response.status_code, 404)

            await client.patch(f"/api/workflow-templates/{template['id']}", json={"is_active": False})
            response = await client.post("/api/workflows", json=payload, headers=HEADERS)
            assert_equal(response.status_code, 409, "Inactive templates cannot start workflows")


async def test_list_workflows_endpoint():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            for index in range(3):
                await _start_workflow(client, template["id"], customer_business_id=f"cb-{index}")

            body = (await client.get("/api/workflows", params={"per_page": 2})).json()
            assert_equal(len(body["data"]), 2)
            assert_equal(body["pagination"], {"page": 1, "per_page": 2, "total": 3, "total_pages": 2})

            body = (await client.get("/api/workflows", params={"customer_business_id": "cb-1"})).json()
            assert_equal(body["pagination"]["total"], 1)

            response = await client.get("/api/workflows", params={"per_page": 0})
            assert_equal(response.status_code, 422)


async def test_step_update_and_due_endpoints():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            workflow = await _start_workflow(client, template["id"])
            step_a = workflow["steps"][0]

            response = await client.patch(
                f"/api/workflows/steps/{step_a['id']}",
                json={"assignee_id": "user-2", "note": "Waiting on client"},
                headers=HEADERS,
            )
            assert_equal(response.status_code, 200, response.text)
            assert_equal(response.json()["assignee_id"], "user-2")
            assert_equal(response.json()["note"], "Waiting on client")

            ctx.clock.set(datetime(2026, 1, 3))
            due = (await client.get("/api/workflows/steps/due", params={"within_days": 0})).json()
            assert_equal([step["id"] for step in due], [step_a["id"]])

            due = (await client.get("/api/workflows/steps/due", params={"assignee_id": "user-1"})).json()
            assert_equal(due, [])

            response = await client.patch("/api/workflows/steps/missing", json={"note": "x"}, headers=HEADERS)
            assert_equal(response.status_code, 404)


async def test_notification_endpoints():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            template = await _create_template(client)
            await _start_workflow(client, template["id"])
            await ctx.event_bus.drain()

            notifications = (await client.get("/api/notifications", headers=HEADERS)).json()
            assert_equal(len(notifications), 1)
            notification_id = notifications[0]["id"]

            response = await client.post(
                f"/api/notifications/{notification_id}/read", headers={"X-User-Id": "user-2"}
            )
            assert_equal(response.status_code, 404, "Other users cannot touch it")

            response = await client.post(f"/api/notifications/{notification_id}/read", headers=HEADERS)
            assert_equal(response.status_code, 200)
            assert_true(response.json()["is_read"])

            unread = (await client.get("/api/notifications", params={"unread_only": True}, headers=HEADERS)).json()
            assert_equal(unread, [])

            response = await client.get("/api/notifications")
            assert_equal(response.status_code, 401)


async def main():
    return await run_tests("REST API Tests", [
        ("Health and metrics", test_health_and_metrics),
        ("Template endpoints", test_template_endpoints),
        ("Template validation", test_template_validation),
        ("Workflow lifecycle", test_workflow_lifecycle),
        ("Start date with offset is converted", test_start_date_with_offset_is_converted),
        ("Cancel endpoint", test_cancel_endpoint),
        ("Start errors", test_start_errors),
        ("List workflows endpoint", test_list_workflows_endpoint),
        ("Step update and due endpoints", test_step_update_and_due_endpoints),
        ("Notification endpoints", test_notification_endpoints),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
