"""Lighter DEX client wrapper and the pair-trade execution service.

Wraps the lighter-sdk async API. `LighterExecutionService` submits both legs
of a pair trade as market orders, rolls back a leg whose partner failed and
checks the resulting holdings on the exchange.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class OrderResult:
    success: bool
    order_id: str | None = None
    error: str | None = None
    filled_amount: float | None = None
    order_status: str | None = None
    raw_response: str | None = None


@dataclass(frozen=True)
class TradeLeg:
    token: str
    is_buy: bool
    amount: float  # token units
    price: float   # worst acceptable price
    market_index: int = 0


@dataclass
class PairTradeResult:
    success: bool
    fill_amounts: tuple[float, float] = (0.0, 0.0)
    fill_prices: tuple[float | None, float | None] = (None, None)
    tx_ids: tuple[str, ...] = ()
    error: str | None = None
    uncertain: bool = False  # holdings unknown after a failed rollback
    legs: dict = field(default_factory=dict)


class ExecutionService(Protocol):
    min_leg_notional: float

    async def submit_pair_trade(self, leg_a: TradeLeg, leg_b: TradeLeg, closing: bool = False) -> PairTradeResult: ...


class LighterClient:
    """Wrapper around the Lighter SDK for trading operations."""

    def __init__(
        self,
        host: str,
        private_key: str,
        api_key_index: int,
        account_index: int,
    ):
        self.host = host
        self.private_key = private_key
        self.api_key_index = api_key_index
        self.account_index = account_index
        self._api_client = None
        self._signer_client = None
        self._market_meta: dict[int, dict] = {}  # market_index → {price_decimals, size_decimals}

    async def _ensure_clients(self):
        """Lazily initialize Lighter SDK clients."""
        if self._api_client is not None:
            return

        import lighter

        config = lighter.Configuration(host=self.host)
        self._api_client = lighter.ApiClient(configuration=config)
        self._signer_client = lighter.SignerClient(
            url=self.host,
            account_index=self.account_index,
            api_private_keys={self.api_key_index: self.private_key},
        )
        logger.info("Lighter SDK clients initialized")

    async def _get_market_meta(self, market_index: int) -> dict:
        """Fetch and cache price/size decimal info for a market."""
        if market_index in self._market_meta:
            return self._market_meta[market_index]

        import lighter
        order_api = lighter.OrderApi(self._api_client)
        resp = await order_api.order_book_details(market_id=market_index)
        for book in (resp.order_book_details or []) + (resp.spot_order_book_details or []):
            if book.market_id == market_index:
                meta = {
                    "price_decimals": int(book.supported_price_decimals),
                    "size_decimals": int(book.supported_size_decimals),
                }
                self._market_meta[market_index] = meta
                logger.info(f"Market {market_index} meta: {meta}")
                return meta
        raise ValueError(f"Could not find market metadata for market_index={market_index}")

    async def place_order(self, leg: TradeLeg, client_order_index: int | None = None) -> OrderResult:
        """Submit one leg as a market order on Lighter.

        `leg.price` is the worst acceptable average execution price. Amounts
        reported back by the signer are in integer market units and are
        decoded with the market's size decimals.
        """
        await self._ensure_clients()

        if client_order_index is None:
            client_order_index = int(time.time() * 1000) % (2**31)
        side = "buy" if leg.is_buy else "sell"

        try:
            meta = await self._get_market_meta(leg.market_index)
            price_int = _to_market_units(leg.price, meta["price_decimals"])
            amount_int = _to_market_units(leg.amount, meta["size_decimals"])
            logger.debug(
                f"{leg.token} {side}: price={leg.price} -> {price_int}, amount={leg.amount} -> {amount_int} "
                f"(market {leg.market_index}, {meta['price_decimals']}/{meta['size_decimals']}dp)"
            )

            order, resp, error = await self._signer_client.create_market_order(
                market_index=leg.market_index,
                client_order_index=client_order_index,
                base_amount=amount_int,
                avg_execution_price=price_int,
                is_ask=not leg.is_buy,
            )
            if error is not None:
                logger.error(f"{leg.token} {side} rejected: {error}")
                return OrderResult(success=False, error=str(error), raw_response=str(resp) if resp else None)

            order_id = str(client_order_index)
            filled_units = getattr(order, "filled_base_amount", None) or getattr(order, "base_amount", None)
            order_status = getattr(order, "status", None)
            logger.info(f"{leg.token} {side} {leg.amount} placed: order {order_id} (market {leg.market_index})")
            return OrderResult(
                success=True,
                order_id=order_id,
                filled_amount=int(filled_units) / 10 ** meta["size_decimals"] if filled_units is not None else None,
                order_status=str(order_status) if order_status is not None else None,
                raw_response=str(resp) if resp else None,
            )
        except Exception as e:
            logger.error(f"{leg.token} {side} failed: {e}")
            return OrderResult(success=False, error=str(e))

    async def cancel_order(self, market_index: int, order_id: str) -> bool:
        """Cancel a resting order; False when Lighter refuses or the call fails."""
        await self._ensure_clients()
        try:
            _cancel, resp, error = await self._signer_client.cancel_order(
                market_index=market_index, order_index=int(order_id)
            )
        except Exception as e:
            logger.error(f"Cancel of order {order_id} failed: {e}")
            return False
        if error is not None:
            logger.error(f"Cancel of order {order_id} rejected: {error} | resp={resp}")
            return False
        return True

    async def get_balance(self) -> float:
        """Get available USDC balance."""
        await self._ensure_clients()
        import lighter

        account_api = lighter.AccountApi(self._api_client)
        resp = await account_api.account(by="index", value=str(self.account_index))
        logger.debug(f"Balance response type={type(resp).__name__}, value={resp}")
        if hasattr(resp, "accounts") and resp.accounts:
            balance = resp.accounts[0].available_balance
        elif hasattr(resp, "available_balance"):
            balance = resp.available_balance
        else:
            raise ValueError(f"Unexpected balance response structure: {resp}")
        return float(balance)

    async def get_positions(self) -> list[dict]:
        """Get all open positions from the Lighter exchange.

        Returns a list of dicts with keys: market_index, side, size, entry_price.
        """
        await self._ensure_clients()
        import lighter

        account_api = lighter.AccountApi(self._api_client)
        resp = await account_api.account(by="index", value=str(self.account_index))
        # Unwrap DetailedAccounts → DetailedAccount
        if hasattr(resp, "accounts") and resp.accounts:
            account = resp.accounts[0]
        else:
            account = resp
        positions = []
        for pos in getattr(account, "positions", None) or []:
            size = float(getattr(pos, "size", 0))
            if abs(size) < 1e-10:
                continue
            positions.append({
                "market_index": int(getattr(pos, "market_index", 0)),
                "side": "long" if size > 0 else "short",
                "size": abs(size),
                "entry_price": float(getattr(pos, "entry_price", 0)),
            })
        return positions

    async def close(self):
        """Close SDK clients."""
        if self._api_client:
            try:
                await self._api_client.close()
            except Exception as e:
                logger.debug(f"Error closing Lighter API client: {e}")
        self._api_client = None
        self._signer_client = None
        self._market_meta = {}


class LighterExecutionService:
    """Submits both legs of a pair trade on Lighter."""

    def __init__(self, client: LighterClient, min_leg_notional: float = 10.0, settle_delay: float = 1.0):
        self.client = client
        self.min_leg_notional = min_leg_notional
        self.settle_delay = settle_delay

    async def submit_pair_trade(self, leg_a: TradeLeg, leg_b: TradeLeg, closing: bool = False) -> PairTradeResult:
        """Place both legs. `closing` means the legs flatten an existing position."""
        result_a = await self.client.place_order(leg_a)
        result_b = await self.client.place_order(leg_b)
        legs = {"leg_a": _order_dict(result_a), "leg_b": _order_dict(result_b)}

        if not result_a.success or not result_b.success:
            err = result_a.error or result_b.error
            rollback_error = await self._rollback_partial_fill(leg_a, leg_b, result_a, result_b)
            if rollback_error:
                err = f"{err}; {rollback_error}"
            return PairTradeResult(success=False, error=err, uncertain=rollback_error is not None, legs=legs)

        tx_ids = tuple(r.order_id for r in (result_a, result_b) if r.order_id)
        unconfirmed = await self._confirm_holdings(leg_a, leg_b, closing)
        if unconfirmed:
            logger.error(unconfirmed)
            return PairTradeResult(success=False, error=unconfirmed, uncertain=True, tx_ids=tx_ids, legs=legs)

        return PairTradeResult(
            success=True,
            fill_amounts=(
                result_a.filled_amount if result_a.filled_amount is not None else leg_a.amount,
                result_b.filled_amount if result_b.filled_amount is not None else leg_b.amount,
            ),
            # Market orders report no execution price; entry terms keep the quoted prices
            tx_ids=tx_ids,
            legs=legs,
        )

    async def _confirm_holdings(self, leg_a: TradeLeg, leg_b: TradeLeg, closing: bool) -> str | None:
        """Market orders can be accepted by the SDK but cancelled by the exchange.

        After both legs are accepted, an entry must show both markets held and
        an exit must show neither. Returns an error describing any mismatch.
        """
        await asyncio.sleep(self.settle_delay)
        try:
            held = {p["market_index"] for p in await self.client.get_positions()}
        except Exception as e:
            return f"holdings not verified: {e}"

        legs = (("A", leg_a), ("B", leg_b))
        if closing:
            still_open = [f"leg {n} (market {leg.market_index})" for n, leg in legs if leg.market_index in held]
            if still_open:
                return f"exit orders accepted but positions still open: {', '.join(still_open)}"
        else:
            missing = [f"leg {n} (market {leg.market_index})" for n, leg in legs if leg.market_index not in held]
            if missing:
                return f"orders accepted but positions not found on exchange: {', '.join(missing)}"
        return None

    async def _rollback_partial_fill(
        self,
        leg_a: TradeLeg,
        leg_b: TradeLeg,
        result_a: OrderResult,
        result_b: OrderResult,
    ) -> str | None:
        """Cancel the successful leg when the other leg fails.

        Both legs must execute. If one fails, cancel the other to avoid an
        orphaned single-sided position. Returns an error when that is not
        possible, which leaves holdings uncertain.
        """
        if result_a.success and not result_b.success:
            survivor, result, name = leg_a, result_a, "A"
        elif result_b.success and not result_a.success:
            survivor, result, name = leg_b, result_b, "B"
        else:
            return None

        logger.warning(f"Leg {'B' if name == 'A' else 'A'} failed, cancelling leg {name} (order {result.order_id})")
        cancelled = await self.client.cancel_order(market_index=survivor.market_index, order_id=result.order_id)
        if not cancelled:
            logger.error(
                f"CRITICAL: Failed to cancel leg {name} order {result.order_id}. Manual intervention required."
            )
            return f"rollback of leg {name} order {result.order_id} failed"
        return None


def _to_market_units(value: float, decimals: int) -> int:
    return int(round(value * 10 ** decimals))


def _order_dict(r: OrderResult) -> dict:
    return {
        "order_id": r.order_id,
        "success": r.success,
        "error": r.error,
        "filled_amount": r.filled_amount,
        "order_status": r.order_status,
    }
