"""Card program templates, issued cards, and authorization decisions.

Program features are a tagged set of variants rather than loose
boolean + amount fields: an Overdraft feature only exists with its limit,
so evaluation code cannot read an overdraft limit whose flag is off.

CRITICAL: All monetary values use Decimal.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import TypeVar, Union

from policy_engine.exceptions import InvalidConfiguration, TransactionImmutable
from policy_engine.models import TransactionStatus, UserType, utcnow

_ZERO = Decimal("0")


@dataclass(frozen=True)
class FeeWaiver:
    """Card transactions carry no transaction fee."""


@dataclass(frozen=True)
class Overdraft:
    """Spending beyond the balance, up to ``limit``."""

    limit: Decimal


@dataclass(frozen=True)
class BuyNowPayLater:
    """Installment eligibility for purchases up to ``max_amount``."""

    max_amount: Decimal
    interest_rate: Decimal  # percent applied to the deferred principal


@dataclass(frozen=True)
class HighTransactionLimit:
    """Program caps replace the holder's standard transfer limit."""

    daily_limit: Decimal
    monthly_limit: Decimal


@dataclass(frozen=True)
class Cashback:
    """Reward credited after settlement."""

    percentage: Decimal


Feature = Union[FeeWaiver, Overdraft, BuyNowPayLater, HighTransactionLimit, Cashback]

F = TypeVar("F", FeeWaiver, Overdraft, BuyNowPayLater, HighTransactionLimit, Cashback)


def _validate_feature(feature: Feature) -> None:
    if isinstance(feature, Overdraft) and feature.limit < _ZERO:
        raise InvalidConfiguration(f"Overdraft limit must be >= 0, got {feature.limit}")
    if isinstance(feature, BuyNowPayLater):
        if feature.max_amount <= _ZERO:
            raise InvalidConfiguration("BNPL max amount must be positive")
        if feature.interest_rate < _ZERO:
            raise InvalidConfiguration("BNPL interest rate must be >= 0")
    if isinstance(feature, Cashback) and not _ZERO <= feature.percentage <= Decimal("100"):
        raise InvalidConfiguration(
            f"Cashback percentage must be within [0, 100], got {feature.percentage}"
        )
    if isinstance(feature, HighTransactionLimit) and (
        feature.daily_limit > feature.monthly_limit
    ):
        raise InvalidConfiguration("High daily limit exceeds high monthly limit")


@dataclass(frozen=True)
class CardProgram:
    """A card product template. Issued cards copy its terms at issue time."""

    id: str
    name: str
    daily_limit: Decimal
    monthly_limit: Decimal
    transaction_fee_percentage: Decimal = _ZERO
    transaction_fee_fixed: Decimal = _ZERO
    required_kyc_level: int = 1
    features: tuple[Feature, ...] = ()
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.daily_limit > self.monthly_limit:
            raise InvalidConfiguration(
                f"Program {self.id}: daily_limit exceeds monthly_limit"
            )
        if self.transaction_fee_percentage < _ZERO or self.transaction_fee_fixed < _ZERO:
            raise InvalidConfiguration(f"Program {self.id}: fees must be >= 0")
        kinds = [type(f) for f in self.features]
        if len(kinds) != len(set(kinds)):
            raise InvalidConfiguration(f"Program {self.id}: duplicate feature")
        for feature in self.features:
            _validate_feature(feature)

    def feature(self, kind: type[F]) -> F | None:
        """Return the program's feature of the given variant, if present."""
        for feature in self.features:
            if isinstance(feature, kind):
                return feature
        return None

    @classmethod
    def from_flags(
        cls,
        id: str,
        name: str,
        daily_limit: Decimal,
        monthly_limit: Decimal,
        transaction_fee_percentage: Decimal = _ZERO,
        transaction_fee_fixed: Decimal = _ZERO,
        required_kyc_level: int = 1,
        no_transaction_fees: bool = False,
        allow_negative_balance: bool = False,
        overdraft_limit: Decimal = _ZERO,
        allow_buy_now_pay_later: bool = False,
        bnpl_max_amount: Decimal = _ZERO,
        bnpl_interest_rate: Decimal = _ZERO,
        high_transaction_limit: bool = False,
        high_daily_limit: Decimal | None = None,
        high_monthly_limit: Decimal | None = None,
        cashback_enabled: bool = False,
        cashback_percentage: Decimal = _ZERO,
        is_active: bool = True,
    ) -> "CardProgram":
        """Build a program from the admin console's flag record.

        Amount fields whose guarding flag is False are dropped. When
        high_transaction_limit is set without explicit elevated caps, the
        program's own daily/monthly limits are the elevated caps.
        """
        features: list[Feature] = []
        if no_transaction_fees:
            features.append(FeeWaiver())
        if allow_negative_balance:
            features.append(Overdraft(limit=overdraft_limit))
        if allow_buy_now_pay_later:
            features.append(
                BuyNowPayLater(max_amount=bnpl_max_amount, interest_rate=bnpl_interest_rate)
            )
        if high_transaction_limit:
            features.append(
                HighTransactionLimit(
                    daily_limit=high_daily_limit if high_daily_limit is not None else daily_limit,
                    monthly_limit=(
                        high_monthly_limit if high_monthly_limit is not None else monthly_limit
                    ),
                )
            )
        if cashback_enabled:
            features.append(Cashback(percentage=cashback_percentage))
        return cls(
            id=id,
            name=name,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
            transaction_fee_percentage=transaction_fee_percentage,
            transaction_fee_fixed=transaction_fee_fixed,
            required_kyc_level=required_kyc_level,
            features=tuple(features),
            is_active=is_active,
        )

    def to_flags(self) -> dict:
        """Inverse of from_flags, for storage and the admin console."""
        overdraft = self.feature(Overdraft)
        bnpl = self.feature(BuyNowPayLater)
        high = self.feature(HighTransactionLimit)
        cashback = self.feature(Cashback)
        return {
            "id": self.id,
            "name": self.name,
            "daily_limit": self.daily_limit,
            "monthly_limit": self.monthly_limit,
            "transaction_fee_percentage": self.transaction_fee_percentage,
            "transaction_fee_fixed": self.transaction_fee_fixed,
            "required_kyc_level": self.required_kyc_level,
            "no_transaction_fees": self.feature(FeeWaiver) is not None,
            "allow_negative_balance": overdraft is not None,
            "overdraft_limit": overdraft.limit if overdraft else _ZERO,
            "allow_buy_now_pay_later": bnpl is not None,
            "bnpl_max_amount": bnpl.max_amount if bnpl else _ZERO,
            "bnpl_interest_rate": bnpl.interest_rate if bnpl else _ZERO,
            "high_transaction_limit": high is not None,
            "high_daily_limit": high.daily_limit if high else None,
            "high_monthly_limit": high.monthly_limit if high else None,
            "cashback_enabled": cashback is not None,
            "cashback_percentage": cashback.percentage if cashback else _ZERO,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class IssuedCard:
    """A card bound to an account, holding a snapshot of its program's terms.

    Later edits to the program do not reach the card until reapply() is called.
    """

    card_id: str
    account_id: str
    terms: CardProgram
    kyc_level: int = 1
    issued_at: datetime = field(default_factory=utcnow)

    @classmethod
    def issue(
        cls, card_id: str, account_id: str, program: CardProgram, kyc_level: int = 1
    ) -> "IssuedCard":
        if not program.is_active:
            raise InvalidConfiguration(f"Card program {program.id} is not active")
        return cls(card_id=card_id, account_id=account_id, terms=program, kyc_level=kyc_level)

    def reapply(self, program: CardProgram) -> "IssuedCard":
        """Explicitly refresh this card's terms from a (possibly edited) program."""
        if program.id != self.terms.id:
            raise InvalidConfiguration(
                f"Card {self.card_id} was issued from {self.terms.id}, not {program.id}"
            )
        return replace(self, terms=program)


# Decisions


@dataclass(frozen=True)
class Approve:
    """Approved against the available balance."""


@dataclass(frozen=True)
class ApproveWithOverdraft:
    """Approved; ``amount_beyond_balance`` is drawn from the overdraft."""

    amount_beyond_balance: Decimal


@dataclass(frozen=True)
class ApproveAsInstallment:
    """Approved as BNPL. Schedule generation belongs to the caller."""

    principal: Decimal
    interest_rate: Decimal

    @property
    def interest_amount(self) -> Decimal:
        return self.principal * self.interest_rate / Decimal("100")

    @property
    def total_repayable(self) -> Decimal:
        return self.principal + self.interest_amount


@dataclass(frozen=True)
class Decline:
    """Declined with a stable reason code."""

    reason: str


Decision = Union[Approve, ApproveWithOverdraft, ApproveAsInstallment, Decline]


@dataclass(frozen=True)
class CardAuthorization:
    """Terminal result of a card authorization, keyed by reference.

    Cashback is computed at authorization but only credited on settlement.
    For an installment approval fee_amount is not debited: it is already part
    of the decision's principal, which the caller finances.
    """

    reference: str
    card_id: str
    account_id: str
    user_type: UserType
    currency: str
    amount: Decimal
    decision: Decision
    fee_amount: Decimal = _ZERO
    cashback_amount: Decimal = _ZERO
    status: TransactionStatus = TransactionStatus.COMPLETED
    settled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    settled_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def approved(self) -> bool:
        return self.status == TransactionStatus.COMPLETED and not isinstance(
            self.decision, Decline
        )

    def settle(self) -> "CardAuthorization":
        if not self.approved:
            raise TransactionImmutable(
                f"Authorization {self.reference} was not approved; nothing to settle"
            )
        if self.settled:
            raise TransactionImmutable(f"Authorization {self.reference} already settled")
        return replace(self, settled=True, settled_at=utcnow())


def decision_to_dict(decision: Decision) -> dict:
    """Serialize a decision for storage and API responses. Decimals become strings."""
    if isinstance(decision, ApproveWithOverdraft):
        return {
            "kind": "approve_with_overdraft",
            "amount_beyond_balance": str(decision.amount_beyond_balance),
        }
    if isinstance(decision, ApproveAsInstallment):
        return {
            "kind": "approve_as_installment",
            "principal": str(decision.principal),
            "interest_rate": str(decision.interest_rate),
            "total_repayable": str(decision.total_repayable),
        }
    if isinstance(decision, Decline):
        return {"kind": "decline", "reason": decision.reason}
    return {"kind": "approve"}


def decision_from_dict(data: dict) -> Decision:
    kind = data["kind"]
    if kind == "approve_with_overdraft":
        return ApproveWithOverdraft(amount_beyond_balance=Decimal(data["amount_beyond_balance"]))
    if kind == "approve_as_installment":
        return ApproveAsInstallment(
            principal=Decimal(data["principal"]),
            interest_rate=Decimal(data["interest_rate"]),
        )
    if kind == "decline":
        return Decline(reason=data["reason"])
    return Approve()
