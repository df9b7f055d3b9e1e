"""Pydantic models for Break Even expense tracking."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_serializer, field_validator

# Remaining amounts at or below this are treated as settled
SETTLED_EPSILON = Decimal("0.01")


class LedgerError(Exception):
    """Base class for errors raised by ledger operations."""

    pass


class NotFoundError(LedgerError, LookupError):
    """A record referenced by an operation does not exist."""

    def __init__(self, entity: str, entity_id: Any = None):
        self.entity = entity
        self.entity_id = entity_id
        if entity_id is None:
            super().__init__(f"{entity} not found")
        else:
            super().__init__(f"{entity} not found: {entity_id}")


class InvalidInputError(LedgerError, ValueError):
    """An operation was called with arguments it cannot accept."""

    pass


def to_decimal(v: Any) -> Decimal:
    """Coerce a number to Decimal, going through str() for floats."""
    if isinstance(v, Decimal):
        return v
    if isinstance(v, float):
        return Decimal(str(v))
    return Decimal(v)


class Currency(str, Enum):
    """Supported currencies."""

    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"
    AUD = "AUD"
    INR = "INR"
    JPY = "JPY"

    @property
    def symbol(self) -> str:
        return _CURRENCY_INFO[self][0]

    @property
    def display_name(self) -> str:
        return _CURRENCY_INFO[self][1]

    @property
    def minor_units(self) -> int:
        """Number of decimal places used when displaying amounts."""
        return _CURRENCY_INFO[self][2]

    @classmethod
    def parse(cls, code: "str | Currency") -> "Currency":
        """Look up a currency by code, case-insensitively."""
        if isinstance(code, Currency):
            return code
        try:
            return cls(str(code).strip().upper())
        except ValueError:
            raise InvalidInputError(f"Unsupported currency: {code}") from None


_CURRENCY_INFO: dict[Currency, tuple[str, str, int]] = {
    Currency.USD: ("$", "US Dollar", 2),
    Currency.EUR: ("€", "Euro", 2),
    Currency.GBP: ("£", "British Pound", 2),
    Currency.CAD: ("C$", "Canadian Dollar", 2),
    Currency.AUD: ("A$", "Australian Dollar", 2),
    Currency.INR: ("₹", "Indian Rupee", 2),
    Currency.JPY: ("¥", "Japanese Yen", 0),
}


class SplitMethod(str, Enum):
    """How a transaction was divided. Stored as-is, never interpreted by the ledger."""

    EQUAL = "equal"
    UNEQUAL = "unequal"
    BY_SHARES = "by_shares"
    BY_ITEM = "by_item"


class SettlementDirection(str, Enum):
    """Who is paying whom in a settlement."""

    TO_FRIEND = "to_friend"  # User pays friend
    FROM_FRIEND = "from_friend"  # Friend pays user

    @classmethod
    def parse(cls, value: "str | SettlementDirection") -> "SettlementDirection":
        if isinstance(value, SettlementDirection):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidInputError(
                f"Invalid settlement direction: {value!r} (expected 'to_friend' or 'from_friend')"
            ) from None


class ExchangeRates(BaseModel):
    """A rate table relative to one base currency: 1 base = rates[X] units of X."""

    base_currency: str = Currency.USD.value
    rates: dict[str, Decimal]
    fetched_at: datetime = Field(default_factory=datetime.now)

    @field_validator("rates", mode="before")
    @classmethod
    def coerce_rates(cls, v: Any) -> dict[str, Decimal]:
        return {str(k).upper(): to_decimal(val) for k, val in v.items()}

    @field_serializer("rates")
    def serialize_rates(self, v: dict[str, Decimal]) -> dict[str, str]:
        return {k: str(val) for k, val in v.items()}


class User(BaseModel):
    """An authenticated person."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    email: str
    phone: str | None = None
    default_currency: Currency = Currency.USD
    created_at: datetime = Field(default_factory=datetime.now)


class Friend(BaseModel):
    """A contact owned by a user: a linked user, a placeholder, or the owner's self entry."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: UUID
    linked_user_id: UUID | None = None
    name: str
    email: str | None = None
    phone: str | None = None
    is_dummy: bool = True
    is_self: bool = False
    created_at: datetime = Field(default_factory=datetime.now)


class LineItem(BaseModel):
    """A receipt line, for by-item splits."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str
    quantity: int = 1
    unit_price: Decimal
    assigned_to_ids: list[UUID] = Field(default_factory=list)

    @field_validator("unit_price", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("unit_price")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


class Transaction(BaseModel):
    """One shared expense. The rate snapshot is frozen at creation."""

    id: UUID = Field(default_factory=uuid4)
    created_by_id: UUID
    paid_by_id: UUID
    title: str
    emoji: str = "📝"
    description: str | None = None
    total_amount: Decimal
    currency: Currency
    split_method: SplitMethod = SplitMethod.EQUAL
    items: list[LineItem] = Field(default_factory=list)
    exchange_rates: ExchangeRates | None = None
    date: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("total_amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("total_amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


class Split(BaseModel):
    """
    One participant's share of a transaction.

    Records written before partial settlements existed have no
    settled_amount; for those only is_settled is meaningful.
    """

    id: UUID = Field(default_factory=uuid4)
    transaction_id: UUID
    friend_id: UUID
    amount: Decimal
    percentage: Decimal | None = None
    is_settled: bool = False
    settled_amount: Decimal | None = None
    settled_at: datetime | None = None
    settled_by_id: UUID | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator("percentage", "settled_amount", mode="before")
    @classmethod
    def coerce_optional(cls, v: Any) -> Decimal | None:
        if v is None:
            return None
        return to_decimal(v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @field_serializer("percentage", "settled_amount")
    def serialize_optional(self, v: Decimal | None) -> str | None:
        return str(v) if v is not None else None

    @property
    def progress(self) -> Decimal:
        """Amount settled so far, under either schema."""
        if self.settled_amount is not None:
            return min(self.settled_amount, self.amount)
        return self.amount if self.is_settled else Decimal("0")

    @property
    def remaining(self) -> Decimal:
        """Amount still owed on this split."""
        if self.settled_amount is not None:
            return max(Decimal("0"), self.amount - self.settled_amount)
        return Decimal("0") if self.is_settled else self.amount

    @property
    def is_outstanding(self) -> bool:
        return self.remaining > SETTLED_EPSILON


class AppliedSplit(BaseModel):
    """How much of one settlement went to one split."""

    split_id: UUID
    transaction_id: UUID
    amount_applied: Decimal  # In the settlement's currency
    split_amount_applied: Decimal  # In the split's transaction currency
    fully_settled: bool

    @field_validator("amount_applied", "split_amount_applied", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_serializer("amount_applied", "split_amount_applied")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)


class Settlement(BaseModel):
    """A recorded payment between the user and one friend."""

    id: UUID = Field(default_factory=uuid4)
    created_by_id: UUID
    friend_id: UUID
    amount: Decimal
    requested_amount: Decimal | None = None
    currency: Currency
    direction: SettlementDirection
    note: str | None = None
    balance_before_settlement: Decimal | None = None
    exchange_rates: ExchangeRates | None = None
    affected_splits: list[AppliedSplit] = Field(default_factory=list)
    settled_at: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator("requested_amount", "balance_before_settlement", mode="before")
    @classmethod
    def coerce_optional(cls, v: Any) -> Decimal | None:
        if v is None:
            return None
        return to_decimal(v)

    @field_serializer("amount")
    def serialize_amount(self, v: Decimal) -> str:
        return str(v)

    @field_serializer("requested_amount", "balance_before_settlement")
    def serialize_optional(self, v: Decimal | None) -> str | None:
        return str(v) if v is not None else None

    @property
    def is_user_paying(self) -> bool:
        return self.direction == SettlementDirection.TO_FRIEND


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Invitation(BaseModel):
    """An invite for someone to claim a dummy friend by signing up or accepting the token."""

    id: UUID = Field(default_factory=uuid4)
    sender_id: UUID
    friend_id: UUID
    recipient_email: str | None = None
    recipient_phone: str | None = None
    status: InvitationStatus = InvitationStatus.PENDING
    token: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.now)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at < (now or datetime.now())


# === Derived results ===


class CurrencyBalance(BaseModel):
    """Outstanding amounts in one original transaction currency."""

    friend_owes: Decimal = Decimal("0")
    user_owes: Decimal = Decimal("0")


class FriendBalance(BaseModel):
    """What the user and one friend owe each other, in the user's default currency."""

    currency: Currency
    friend_owes_user: Decimal = Decimal("0")
    user_owes_friend: Decimal = Decimal("0")
    net_balance: Decimal = Decimal("0")
    by_currency: dict[str, CurrencyBalance] = Field(default_factory=dict)
    rates_complete: bool = True

    @property
    def is_settled_up(self) -> bool:
        return (
            self.friend_owes_user <= SETTLED_EPSILON and self.user_owes_friend <= SETTLED_EPSILON
        )


class SettlementResult(BaseModel):
    """Outcome of applying a settlement amount across outstanding splits."""

    settlement_id: UUID | None
    currency: Currency
    requested_amount: Decimal
    amount_applied: Decimal
    unapplied_amount: Decimal
    balance_before_settlement: Decimal
    splits_touched: list[AppliedSplit] = Field(default_factory=list)


class FeedItemType(str, Enum):
    TRANSACTION = "transaction"
    SETTLEMENT = "settlement"


class FeedItem(BaseModel):
    """One entry in the activity feed between the user and a friend."""

    item_type: FeedItemType
    id: UUID
    timestamp: datetime
    title: str
    amount: Decimal
    currency: Currency
    is_owed: bool | None = None  # True when the friend owes the user
    is_settled: bool = True
    paid_by_user: bool | None = None  # Settlements only
    converted_amount: Decimal | None = None
    converted_balance_before: Decimal | None = None
    display_currency: Currency | None = None


class ActivityFeed(BaseModel):
    """Merged activity, newest first, split at the last full settle-up."""

    items: list[FeedItem] = Field(default_factory=list)
    recent: list[FeedItem] = Field(default_factory=list)
    older: list[FeedItem] = Field(default_factory=list)


class SplitDetail(BaseModel):
    """A split with the name of the friend it belongs to."""

    split: Split
    friend_name: str


class TransactionDetail(BaseModel):
    """A transaction with its payer, its splits and its derived status."""

    transaction: Transaction
    payer_name: str
    splits: list[SplitDetail] = Field(default_factory=list)
    status: str
