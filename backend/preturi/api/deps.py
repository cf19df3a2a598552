from typing import Optional

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from preturi.core.database import get_db
from preturi.core.permissions import ViewContext, parse_view
from preturi.services.engine import PreturiEngine
from preturi.services.notifications import default_notifier
from preturi.store.sql import SqlStore


async def get_engine(db: AsyncSession = Depends(get_db)) -> PreturiEngine:
    """Движок на сессии запроса; commit/rollback выполняет get_db."""
    return PreturiEngine(SqlStore(db), notifier=default_notifier())


def get_view(view: Optional[str] = Query(default=None, description="vanzari | receptie | department | curier")) -> ViewContext:
    return parse_view(view)
