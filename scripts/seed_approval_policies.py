"""
Seed the default approval policy set for every organization (or the ones given).
Run from the project root: python -m scripts.seed_approval_policies [ORG_ID ...]

Existing org-wide policies are left untouched, so the script is safe to re-run.
"""
import asyncio
import sys
import os
import uuid

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from crm_api.database import AsyncSessionLocal, engine, set_organization_context
from crm_api.logging_config import setup_logging
from crm_api.models.organization import Organization
from crm_api.services.policy_service import seed_default_policies


async def seed(organization_ids: list[uuid.UUID]):
    async with AsyncSessionLocal() as db:
        if not organization_ids:
            result = await db.execute(select(Organization.id).order_by(Organization.created_at))
            organization_ids = list(result.scalars().all())

    for org_id in organization_ids:
        # One transaction per organization: the RLS setting is transaction-scoped
        async with AsyncSessionLocal() as db:
            async with db.begin():
                await set_organization_context(db, str(org_id))
                policies = await seed_default_policies(db, org_id)
            print(f"  {org_id}: {len(policies)} policies")

    await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    ids = [uuid.UUID(arg) for arg in sys.argv[1:]]
    print("Seeding approval policies...")
    asyncio.run(seed(ids))
    print("Done.")
