"""Capital and risk authority: available capital and the emergency-stop flag."""

import logging

from sqlalchemy.engine import Engine

from statarb.services.emergency_stop import is_emergency_stop_active
from statarb.services.lighter_client import LighterClient

logger = logging.getLogger(__name__)


class CapitalAuthority:
    """Reads capital from the Lighter account (or a fixed amount) and the persisted stop flag."""

    def __init__(self, engine: Engine, client: LighterClient | None = None, fixed_capital: float = 0.0):
        if client is None and fixed_capital <= 0:
            raise ValueError("CapitalAuthority needs a Lighter client or a fixed capital amount")
        self.engine = engine
        self.client = client
        self.fixed_capital = fixed_capital

    async def get_available_capital(self) -> float:
        if self.fixed_capital > 0:
            return self.fixed_capital
        balance = await self.client.get_balance()
        logger.debug(f"Available capital: ${balance:.2f}")
        return balance

    async def get_emergency_stop_state(self) -> bool:
        return is_emergency_stop_active(self.engine)
