from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crm_api.database import get_db, set_organization_context
from crm_api.middleware.auth import get_current_user


async def get_db_with_tenant(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> AsyncSession:
    """FastAPI dependency: DB session with the RLS organization context set."""
    await set_organization_context(db, current_user["organization_id"])
    return db
