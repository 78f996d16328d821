"""Exchange rate registry: one rate row per ordered currency pair.

Rates are resolved from the configuration store on every call. There is no
implicit inverse; USD->SLE says nothing about SLE->USD.
"""

from decimal import Decimal

from policy_engine.data.store import ConfigStore
from policy_engine.exceptions import RateInactive, RateNotConfigured
from policy_engine.logging import get_logger
from policy_engine.models import CurrencyPair, ExchangeRate, utcnow

logger = get_logger(__name__)


class RateRegistry:
    """Stores and resolves exchange rates with margin.

    Args:
        store: Configuration store holding the rate rows.
    """

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    async def resolve(self, from_currency: str, to_currency: str) -> ExchangeRate:
        """Return the active rate for an ordered pair.

        The returned row's effective_rate is computed from its current rate
        and margin on read.

        Raises:
            RateNotConfigured: If no rate row exists for the pair.
            RateInactive: If the pair's rate row is disabled.
        """
        pair = CurrencyPair(from_currency, to_currency)
        rate = await self._store.get_rate(pair.from_currency, pair.to_currency)
        if rate is None:
            logger.warning("rate_not_configured", pair=str(pair))
            raise RateNotConfigured(f"No exchange rate configured for {pair}")
        if not rate.is_active:
            logger.warning("rate_inactive", pair=str(pair))
            raise RateInactive(f"Exchange rate for {pair} is disabled")
        return rate

    async def set(
        self,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        margin_percentage: Decimal = Decimal("0"),
    ) -> ExchangeRate:
        """Upsert the rate for a pair, superseding and reactivating any prior row.

        Raises:
            InvalidRateParameters: If rate <= 0 or margin is outside [0, 100].
        """
        new_rate = ExchangeRate(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=rate,
            margin_percentage=margin_percentage,
            is_active=True,
            updated_at=utcnow(),
        )
        previous = await self._store.get_rate(new_rate.from_currency, new_rate.to_currency)
        await self._store.save_rate(new_rate)
        logger.info(
            "rate_set",
            pair=str(new_rate.pair),
            rate=str(new_rate.rate),
            margin_percentage=str(new_rate.margin_percentage),
            effective_rate=str(new_rate.effective_rate),
            previous_rate=str(previous.rate) if previous else None,
        )
        return new_rate

    async def deactivate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        """Disable a pair's rate; exchanges on the pair then fail with RateInactive.

        Raises:
            RateNotConfigured: If no rate row exists for the pair.
        """
        pair = CurrencyPair(from_currency, to_currency)
        current = await self._store.get_rate(pair.from_currency, pair.to_currency)
        if current is None:
            raise RateNotConfigured(f"No exchange rate configured for {pair}")
        current.is_active = False
        current.updated_at = utcnow()
        await self._store.save_rate(current)
        logger.info("rate_deactivated", pair=str(pair))
        return current

    async def list_rates(self) -> list[ExchangeRate]:
        """Return every rate row, active or not, ordered by pair."""
        return await self._store.list_rates()
