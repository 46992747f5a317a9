from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.services.engine import BillingEngine


def get_engine(request: Request) -> BillingEngine:
    # The engine is wired once at startup and kept on app.state.
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "TEMPORARILY_UNAVAILABLE", "message": "Engine is starting"},
        )
    return engine


async def get_db(engine: BillingEngine = Depends(get_engine)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with engine.session_factory() as session:
        yield session
