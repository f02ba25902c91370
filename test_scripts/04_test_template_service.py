#!/usr/bin/env python3
"""
Test: Template Service
Purpose: Test the workflow template catalog

Tests:
- Create and fetch templates with ordered steps
- List and filter templates
- Update metadata
- Replace steps while unused, rejected once referenced
- Request validation of step definitions
"""

import asyncio
import sys
from pydantic import ValidationError

from fixtures import (
    run_tests, TestContext, create_test_template, start_test_workflow, make_step,
    assert_equal, assert_true, assert_raises, assert_raises_async,
)

from backoffice.core import TemplateService, NotFoundError, InvalidStateError
from backoffice.models.schemas import (
    StepTemplateCreate,
    WorkflowTemplateCreate,
    StepTemplateReplace,
)


async def test_create_and_get_template():
    async with TestContext() as ctx:
        steps = [make_step("Second", 2, days_from_previous=1), make_step("First", 1, days_from_start=0)]

        async with ctx.get_session() as session:
            created = await TemplateService(session).create_template(
                "  Ad onboarding ", "biz-ad", steps, description="Standard flow"
            )

        async with ctx.get_session() as session:
            template = await TemplateService(session).get_template(created.id)

        assert_equal(template.name, "Ad onboarding")
        assert_equal(template.business_id, "biz-ad")
        assert_equal(template.description, "Standard flow")
        assert_true(template.is_active)
        assert_equal([step.title for step in template.steps], ["First", "Second"], "Ordered by sort_order")
        assert_equal(template.steps[1].days_from_previous, 1)


async def test_get_missing_template():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            error = await assert_raises_async(
                NotFoundError, TemplateService(session).get_template("nope")
            )
        assert_equal(error.entity, "WorkflowTemplate")
        assert_equal(error.entity_id, "nope")


async def test_list_templates_filters():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            service = TemplateService(session)
            ad = await create_test_template(session, business_id="biz-ad", name="Ad")
            await create_test_template(session, business_id="biz-seo", name="Seo")
            await service.update_template(ad.id, is_active=False)

            assert_equal(len(await service.list_templates()), 2)
            assert_equal([t.name for t in await service.list_templates(business_id="biz-seo")], ["Seo"])
            assert_equal([t.name for t in await service.list_templates(is_active=False)], ["Ad"])
            assert_equal(len(await service.list_templates(business_id="biz-ad", is_active=True)), 0)


async def test_update_template_metadata():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session, name="Old")
            updated = await TemplateService(session).update_template(
                template.id, name="New", description=""
            )

        assert_equal(updated.name, "New")
        assert_equal(updated.description, None, "Empty description clears it")
        assert_equal(len(updated.steps), 3, "Steps untouched")


async def test_replace_steps_while_unused():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)
            replaced = await TemplateService(session).replace_steps(
                template.id,
                [make_step("Kickoff", 1), make_step("Report", 2, days_from_previous=14)],
            )

        async with ctx.get_session() as session:
            template = await TemplateService(session).get_template(replaced.id)

        assert_equal([step.title for step in template.steps], ["Kickoff", "Report"])
        assert_equal(template.steps[1].days_from_previous, 14)


async def test_replace_steps_rejected_once_used():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            await start_test_workflow(engine, template.id)

        async with ctx.get_session() as session:
            service = TemplateService(session)
            assert_equal(await service.count_workflows(template.id), 1)
            error = await assert_raises_async(
                InvalidStateError,
                service.replace_steps(template.id, [make_step("Other", 1)]),
            )
        assert_equal(error.current_state, "IN_USE")

        async with ctx.get_session() as session:
            template = await TemplateService(session).get_template(template.id)
        assert_equal([step.title for step in template.steps], ["A", "B", "C"])


async def test_replace_steps_sees_workflow_started_after_load():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.get_session() as session:
            service = TemplateService(session)
            await service.get_template(template.id)

            async with ctx.engine() as engine:
                workflow = await start_test_workflow(engine, template.id)

            await assert_raises_async(
                InvalidStateError,
                service.replace_steps(template.id, [make_step("Other", 1)]),
            )

        async with ctx.get_session() as session:
            template = await TemplateService(session).get_template(template.id)
        step_template_ids = {step.id for step in template.steps}

        async with ctx.engine() as engine:
            steps = await engine.get_workflow_steps(workflow.id)
        assert_true(all(step.step_template_id in step_template_ids for step in steps))


async def test_resolve_steps_sorted():
    async with TestContext() as ctx:
        steps = [make_step("Z", 30), make_step("X", 10), make_step("Y", 20)]
        async with ctx.get_session() as session:
            template = await create_test_template(session, steps=steps)
            resolved = await TemplateService(session).resolve_steps(template.id)

        assert_equal([step.title for step in resolved], ["X", "Y", "Z"])


async def test_step_definition_validation():
    """At most one offset rule per step, no negative offsets, unique orders"""
    assert_raises(
        ValidationError,
        StepTemplateCreate,
        title="Both",
        sort_order=1,
        days_from_start=1,
        days_from_previous=2,
    )
    assert_raises(ValidationError, StepTemplateCreate, title="Negative", sort_order=1, days_from_previous=-1)
    assert_raises(ValidationError, StepTemplateCreate, title="Negative", sort_order=1, days_from_start=-1)
    assert_raises(ValidationError, StepTemplateCreate, title="", sort_order=1)

    assert_raises(
        ValidationError,
        WorkflowTemplateCreate,
        name="Dup",
        business_id="biz-ad",
        steps=[make_step("One", 1), make_step("Two", 1)],
    )
    assert_raises(ValidationError, WorkflowTemplateCreate, name="Empty", business_id="biz-ad", steps=[])
    assert_raises(ValidationError, StepTemplateReplace, steps=[make_step("One", 2), make_step("Two", 2)])


async def main():
    return await run_tests("Template Service Tests", [
        ("Create and get template", test_create_and_get_template),
        ("Get missing template", test_get_missing_template),
        ("List templates with filters", test_list_templates_filters),
        ("Update template metadata", test_update_template_metadata),
        ("Replace steps while unused", test_replace_steps_while_unused),
        ("Replace steps rejected once used", test_replace_steps_rejected_once_used),
        ("Replace steps sees workflow started after load", test_replace_steps_sees_workflow_started_after_load),
        ("Resolve steps sorted", test_resolve_steps_sorted),
        ("Step definition validation", test_step_definition_validation),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
