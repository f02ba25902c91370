"""
Seed the database with the standard ad-operations onboarding template and
one sample workflow started from it.

Usage:
    python scripts/seed_templates.py [--business-id ad] [--customer-business-id cb-demo]
"""

import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from backoffice.models import Database, StepTemplateCreate
from backoffice.core import TemplateService, WorkflowEngine

logger = structlog.get_logger()

AD_ONBOARDING_STEPS = [
    StepTemplateCreate(title="Send hearing sheet", sort_order=1, days_from_start=0),
    StepTemplateCreate(title="Hold hearing", sort_order=2, days_from_previous=3),
    StepTemplateCreate(title="Open ad accounts", sort_order=3, days_from_previous=1),
    StepTemplateCreate(title="Configure and submit ads", sort_order=4, days_from_previous=5),
    StepTemplateCreate(title="Write first report", sort_order=5, days_from_previous=14),
    StepTemplateCreate(title="Schedule next follow-up", sort_order=6, days_from_previous=0),
]


async def seed(business_id: str, customer_business_id: str, assignee_id: str):
    db = Database()
    await db.init()

    try:
        async with db.session() as session:
            template = await TemplateService(session).create_template(
                "New ad operations onboarding",
                business_id,
                AD_ONBOARDING_STEPS,
                description="Standard flow when a new client starts ad operations",
            )

            workflow = await WorkflowEngine(session).start_workflow(
                template.id,
                customer_business_id,
                None,
                assignee_id,
            )

        logger.info(
            "seed_completed",
            template_id=template.id,
            workflow_id=workflow.id,
            num_steps=len(workflow.steps),
        )
        print(f"Template: {template.id}")
        print(f"Workflow: {workflow.id}")
        for step in workflow.steps:
            print(f"  {step.sort_order}. {step.title:<28} {step.status:<8} due {step.due_date:%Y-%m-%d}")
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Seed onboarding templates")
    parser.add_argument("--business-id", default="ad")
    parser.add_argument("--customer-business-id", default="cb-demo")
    parser.add_argument("--assignee-id", default="manager")
    args = parser.parse_args()

    asyncio.run(seed(args.business_id, args.customer_business_id, args.assignee_id))


if __name__ == "__main__":
    main()
