"""Trade history API."""

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from statarb.database import get_session
from statarb.models.trade import Trade

router = APIRouter(prefix="/api/trades", tags=["trades"])


@router.get("")
def list_trades(
    pair_id: str | None = None,
    exit_reason: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Trade).order_by(Trade.exit_time.desc())
    if pair_id is not None:
        stmt = stmt.where(Trade.pair_id == pair_id)
    if exit_reason is not None:
        stmt = stmt.where(Trade.exit_reason == exit_reason)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()
