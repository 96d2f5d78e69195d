"""Shared API dependencies."""

from fastapi import HTTPException, Request, status
from sqlalchemy.engine import Engine

from statarb.engine.controller import StrategyController


def get_controller(request: Request) -> StrategyController:
    """The controller built at startup, or 503 when trading is not configured."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Strategy controller is not running (check Lighter credentials)",
        )
    return controller


def get_db_engine(request: Request) -> Engine:
    return request.app.state.db_engine
