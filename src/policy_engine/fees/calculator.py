"""Fee computation from tiered fee rules.

All calculations use Decimal arithmetic exclusively -- no float conversions anywhere.

Formula, applied in this exact order:
  raw     = amount * percentage / 100
  bounded = clamp(raw, minimum_fee, maximum_fee or +inf)
  fee     = bounded + flat_fee

No rounding is applied here; posting code quantizes amounts.
"""

from decimal import Decimal

from policy_engine.data.store import ConfigStore
from policy_engine.exceptions import FeeConfigMissing
from policy_engine.logging import get_logger
from policy_engine.models import Fee, FeeConfig, normalize_currency

logger = get_logger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class FeeCalculator:
    """Computes fees from the active FeeConfig for a transaction type and currency.

    Args:
        store: Configuration store holding fee rules.
    """

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    async def compute_fee(
        self, amount: Decimal, currency: str, transaction_type: str
    ) -> Fee:
        """Compute the fee owed for an amount.

        Args:
            amount: Transaction principal.
            currency: Currency of the principal; the fee is in the same currency.
            transaction_type: Fee rule category (e.g. "transfer", "p2p", "card").

        Returns:
            The computed Fee.

        Raises:
            FeeConfigMissing: If no active rule exists for (transaction_type, currency).
        """
        config = await self._store.get_fee_config(transaction_type, currency)
        if config is None or not config.is_active:
            logger.warning(
                "fee_config_missing",
                transaction_type=transaction_type,
                currency=currency,
                inactive=config is not None,
            )
            raise FeeConfigMissing(
                f"No active fee config for {transaction_type}/{normalize_currency(currency)}"
            )
        return self.apply_config(config, amount)

    @staticmethod
    def apply_config(config: FeeConfig, amount: Decimal) -> Fee:
        """Apply a fee rule to an amount. The result is never negative."""
        raw = amount * config.percentage / _HUNDRED
        bounded = max(raw, config.minimum_fee)
        if config.maximum_fee is not None:
            bounded = min(bounded, config.maximum_fee)
        fee = max(bounded + config.flat_fee, _ZERO)
        return Fee(
            amount=fee,
            currency=config.currency,
            transaction_type=config.transaction_type,
        )

    @staticmethod
    def waived(currency: str, transaction_type: str) -> Fee:
        """Zero fee for fee-waived card programs. No rule is consulted."""
        return Fee(
            amount=_ZERO,
            currency=normalize_currency(currency),
            transaction_type=transaction_type,
            waived=True,
        )

    @staticmethod
    def percentage_fee(amount: Decimal, percentage: Decimal) -> Decimal:
        """Plain percentage fee, used for permission-scoped exchange fees.

        Formula: fee = amount * percentage / 100
        """
        return amount * percentage / _HUNDRED
