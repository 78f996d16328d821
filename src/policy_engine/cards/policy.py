"""Card program feature evaluation against a proposed card transaction.

Pure decision logic: no balances are touched here. The facade applies the
decision (debit, overdraft floor, installment hand-off) through the
account store.
"""

from decimal import Decimal

from policy_engine.cards.models import (
    Approve,
    ApproveAsInstallment,
    ApproveWithOverdraft,
    BuyNowPayLater,
    Cashback,
    Decision,
    Decline,
    FeeWaiver,
    HighTransactionLimit,
    IssuedCard,
    Overdraft,
)
from policy_engine.exceptions import InsufficientFunds, LimitNotConfigured
from policy_engine.logging import get_logger
from policy_engine.models import FeeConfig, LimitCaps, TransferLimit

logger = get_logger(__name__)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")

DECLINE_INVALID_AMOUNT = "INVALID_AMOUNT"
DECLINE_KYC_LEVEL_TOO_LOW = "KYC_LEVEL_TOO_LOW"
DECLINE_BNPL_NOT_AVAILABLE = "BNPL_NOT_AVAILABLE"
DECLINE_BNPL_AMOUNT_EXCEEDED = "BNPL_AMOUNT_EXCEEDED"
DECLINE_INSUFFICIENT_FUNDS = InsufficientFunds.code


class CardFeaturePolicy:
    """Evaluates an issued card's program features for a transaction."""

    def evaluate(
        self,
        card: IssuedCard,
        proposed_amount: Decimal,
        account_balance: Decimal,
        *,
        use_bnpl: bool = False,
    ) -> Decision:
        """Decide whether and how a card transaction may proceed.

        BNPL is only considered when the caller selects it. Otherwise the
        amount is approved against the balance, then against the overdraft
        allowance if the program has one.

        Args:
            card: The issued card (its snapshot of program terms is used).
            proposed_amount: Total amount to be debited, fees included.
            account_balance: Current balance of the funding account.
            use_bnpl: True when the holder chose to pay in installments.

        Returns:
            Approve, ApproveWithOverdraft, ApproveAsInstallment, or Decline.
        """
        terms = card.terms

        if proposed_amount <= _ZERO:
            return Decline(DECLINE_INVALID_AMOUNT)

        if card.kyc_level < terms.required_kyc_level:
            logger.info(
                "card_declined_kyc",
                card_id=card.card_id,
                kyc_level=card.kyc_level,
                required=terms.required_kyc_level,
            )
            return Decline(DECLINE_KYC_LEVEL_TOO_LOW)

        if use_bnpl:
            bnpl = terms.feature(BuyNowPayLater)
            if bnpl is None:
                return Decline(DECLINE_BNPL_NOT_AVAILABLE)
            if proposed_amount > bnpl.max_amount:
                return Decline(DECLINE_BNPL_AMOUNT_EXCEEDED)
            return ApproveAsInstallment(
                principal=proposed_amount, interest_rate=bnpl.interest_rate
            )

        shortfall = account_balance - proposed_amount
        if shortfall >= _ZERO:
            return Approve()

        overdraft = terms.feature(Overdraft)
        if overdraft is not None and -shortfall <= overdraft.limit:
            return ApproveWithOverdraft(amount_beyond_balance=min(proposed_amount, -shortfall))

        logger.info(
            "card_declined_insufficient_funds",
            card_id=card.card_id,
            balance=str(account_balance),
            amount=str(proposed_amount),
            overdraft_limit=str(overdraft.limit) if overdraft else None,
        )
        return Decline(DECLINE_INSUFFICIENT_FUNDS)

    @staticmethod
    def cashback(card: IssuedCard, amount: Decimal) -> Decimal:
        """Reward for a transaction, independent of approval.

        Formula: reward = amount * cashback_percentage / 100
        """
        cashback = card.terms.feature(Cashback)
        if cashback is None:
            return _ZERO
        return amount * cashback.percentage / _HUNDRED

    @staticmethod
    def is_fee_waived(card: IssuedCard) -> bool:
        return card.terms.feature(FeeWaiver) is not None

    @staticmethod
    def fee_terms(card: IssuedCard, currency: str) -> FeeConfig | None:
        """The program's own fee terms, or None to fall back to the fee table."""
        terms = card.terms
        if terms.transaction_fee_percentage == _ZERO and terms.transaction_fee_fixed == _ZERO:
            return None
        return FeeConfig(
            transaction_type="card",
            currency=currency,
            percentage=terms.transaction_fee_percentage,
            flat_fee=terms.transaction_fee_fixed,
        )

    @staticmethod
    def balance_floor(card: IssuedCard) -> Decimal:
        """Lowest balance a card debit may leave: minus the overdraft limit, or zero."""
        overdraft = card.terms.feature(Overdraft)
        return -overdraft.limit if overdraft is not None else _ZERO

    @staticmethod
    def limit_caps(card: IssuedCard, transfer_limit: TransferLimit | None) -> LimitCaps:
        """Caps to enforce for a card transaction.

        A HighTransactionLimit program's caps replace the holder's standard
        transfer limit; the two sources are never summed.

        Raises:
            LimitNotConfigured: If the standard limit applies but none is active.
        """
        high = card.terms.feature(HighTransactionLimit)
        if high is not None:
            return LimitCaps(daily=high.daily_limit, monthly=high.monthly_limit)
        if transfer_limit is None or not transfer_limit.is_active:
            raise LimitNotConfigured(
                f"No active transfer limit applies to card {card.card_id}"
            )
        return transfer_limit.caps()
