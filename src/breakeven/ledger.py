"""Pure financial logic for balances, settlements and activity. No I/O, no side effects."""

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import NamedTuple
from uuid import UUID

from pydantic import BaseModel, Field

from .fx import RateTable, convert, convert_checked, quantize
from .models import (
    SETTLED_EPSILON,
    ActivityFeed,
    AppliedSplit,
    Currency,
    CurrencyBalance,
    FeedItem,
    FeedItemType,
    Friend,
    FriendBalance,
    LineItem,
    Settlement,
    SettlementDirection,
    Split,
    Transaction,
    User,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class Share(NamedTuple):
    """A participant's computed share before it becomes a Split record."""

    friend_id: UUID
    amount: Decimal
    percentage: Decimal | None = None


def validate_splits(
    amounts: Iterable[Decimal], total: Decimal, tolerance: Decimal = SETTLED_EPSILON
) -> None:
    """
    Validate that split amounts sum to the total transaction amount.

    Args:
        amounts: Split amounts to validate
        total: Expected total amount
        tolerance: Acceptable difference (default 0.01 for rounding)

    Raises:
        ValueError: If splits don't sum to total within tolerance
    """
    splits_sum = sum(amounts, ZERO)
    diff = abs(splits_sum - total)
    if diff > tolerance:
        raise ValueError(
            f"Splits sum to {splits_sum} but transaction total is {total} "
            f"(difference: {diff}, tolerance: {tolerance})"
        )


def _distribute(
    total: Decimal, currency: str, weights: Sequence[tuple[UUID, Decimal]]
) -> list[tuple[UUID, Decimal]]:
    """Split total by weight, rounding each share; the last person absorbs the remainder."""
    weight_sum = sum((w for _, w in weights), ZERO)
    if weight_sum <= 0:
        raise ValueError("Cannot split with zero total weight")

    result = []
    allocated = ZERO
    for i, (friend_id, weight) in enumerate(weights):
        if i == len(weights) - 1:
            share = total - allocated
        else:
            share = quantize(total * weight / weight_sum, currency)
            allocated += share
        result.append((friend_id, share))
    return result


def compute_equal_splits(
    total: Decimal,
    currency: str,
    participants: Sequence[UUID],
) -> list[Share]:
    """
    Compute equal splits among participants, handling rounding correctly.

    The last person gets any rounding remainder so the shares sum exactly to total.
    """
    if not participants:
        raise ValueError("Cannot split among zero participants")

    weights = [(friend_id, Decimal("1")) for friend_id in participants]
    return [Share(friend_id, amount) for friend_id, amount in _distribute(total, currency, weights)]


def compute_share_splits(
    total: Decimal,
    currency: str,
    shares: Mapping[UUID, int],
) -> list[Share]:
    """
    Split proportionally to a number of shares (parts) per participant.

    Each split also records its percentage of the total.
    """
    if not shares:
        raise ValueError("Cannot split among zero participants")
    if any(n < 0 for n in shares.values()):
        raise ValueError("Share counts cannot be negative")

    total_parts = Decimal(sum(shares.values()))
    weights = [(friend_id, Decimal(n)) for friend_id, n in shares.items()]
    return [
        Share(friend_id, amount, Decimal(shares[friend_id]) / total_parts * 100)
        for friend_id, amount in _distribute(total, currency, weights)
    ]


def compute_item_splits(items: Sequence[LineItem], currency: str) -> list[Share]:
    """
    Split line items among the people each one is assigned to.

    An item assigned to several people is divided equally between them.
    Shares are listed in order of first appearance.
    """
    per_person: dict[UUID, Decimal] = {}
    for item in items:
        if not item.assigned_to_ids:
            raise ValueError(f"Item '{item.name}' is not assigned to anyone")
        portion = item.total / len(item.assigned_to_ids)
        for friend_id in item.assigned_to_ids:
            per_person[friend_id] = per_person.get(friend_id, ZERO) + portion

    if not per_person:
        raise ValueError("Cannot split among zero participants")

    items_total = sum((item.total for item in items), ZERO)
    return [
        Share(friend_id, amount)
        for friend_id, amount in _distribute(items_total, currency, list(per_person.items()))
    ]


def transaction_status(splits: Iterable[Split]) -> str:
    """pending, partial or settled, from the settlement state of a transaction's splits."""
    settled = [not split.is_outstanding for split in splits]
    if settled and all(settled):
        return "settled"
    if any(settled):
        return "partial"
    return "pending"


# === Balances ===


def _owed_to(
    splits: Iterable[Split], payer_id: UUID, transactions: Mapping[UUID, Transaction]
) -> Iterator[tuple[Split, Transaction]]:
    """Splits with something remaining whose transaction was paid by payer_id."""
    for split in splits:
        if split.remaining <= 0:
            continue
        tx = transactions.get(split.transaction_id)
        if tx is None:
            logger.warning(
                "Split %s references missing transaction %s", split.id, split.transaction_id
            )
            continue
        if tx.paid_by_id == payer_id:
            yield split, tx


def balance_with(
    user: User,
    friend: Friend,
    self_friend: Friend | None,
    friend_splits: Iterable[Split],
    self_splits: Iterable[Split],
    transactions: Mapping[UUID, Transaction],
) -> FriendBalance:
    """
    Compute what the user and one friend owe each other.

    Totals are converted to the user's default currency with each
    transaction's own rate snapshot; the breakdown keeps the original
    transaction currencies.

    Args:
        user: The user whose view this is
        friend: The other side
        self_friend: The user's own Friend record (None gives a zero balance)
        friend_splits: All splits belonging to friend
        self_splits: All splits belonging to self_friend
        transactions: Parent transactions by id

    Returns:
        FriendBalance; positive net_balance means the friend owes the user
    """
    target = user.default_currency
    balance = FriendBalance(currency=target)
    if self_friend is None:
        return balance

    friend_owes = ZERO
    user_owes = ZERO
    by_currency: dict[str, CurrencyBalance] = {}
    complete = True

    for split, tx in _owed_to(friend_splits, self_friend.id, transactions):
        remaining = split.remaining
        entry = by_currency.setdefault(tx.currency.value, CurrencyBalance())
        entry.friend_owes += remaining
        conversion = convert_checked(remaining, tx.currency, target, tx.exchange_rates)
        complete = complete and conversion.converted
        friend_owes += conversion.amount

    for split, tx in _owed_to(self_splits, friend.id, transactions):
        remaining = split.remaining
        entry = by_currency.setdefault(tx.currency.value, CurrencyBalance())
        entry.user_owes += remaining
        conversion = convert_checked(remaining, tx.currency, target, tx.exchange_rates)
        complete = complete and conversion.converted
        user_owes += conversion.amount

    friend_owes = quantize(friend_owes, target)
    user_owes = quantize(user_owes, target)

    return FriendBalance(
        currency=target,
        friend_owes_user=friend_owes,
        user_owes_friend=user_owes,
        net_balance=friend_owes - user_owes,
        by_currency=by_currency,
        rates_complete=complete,
    )


# === Settlements ===


class Candidate(NamedTuple):
    """An outstanding split a settlement may be applied to."""

    split: Split
    transaction: Transaction


def order_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Oldest debt first: transaction date, then transaction and split creation time."""
    return sorted(
        candidates,
        key=lambda c: (c.transaction.date, c.transaction.created_at, c.split.created_at),
    )


def settlement_candidates(
    direction: SettlementDirection,
    friend: Friend,
    self_friend: Friend,
    friend_splits: Iterable[Split],
    self_splits: Iterable[Split],
    transactions: Mapping[UUID, Transaction],
) -> list[Candidate]:
    """
    Select and order the splits a settlement in the given direction pays off.

    from_friend: the friend's splits in transactions the user paid.
    to_friend: the user's splits in transactions the friend paid.
    """
    if direction == SettlementDirection.FROM_FRIEND:
        splits, payer_id = friend_splits, self_friend.id
    else:
        splits, payer_id = self_splits, friend.id

    return order_candidates(
        Candidate(split, tx) for split, tx in _owed_to(splits, payer_id, transactions)
    )


class Allocation(BaseModel):
    """Result of spreading a payment over ordered candidates. Nothing is persisted."""

    currency: Currency
    requested_amount: Decimal
    amount_applied: Decimal = ZERO
    balance_before: Decimal = ZERO
    applied: list[AppliedSplit] = Field(default_factory=list)
    updated_splits: list[Split] = Field(default_factory=list)

    @property
    def unapplied_amount(self) -> Decimal:
        return self.requested_amount - self.amount_applied


def allocate_fifo(
    amount: Decimal,
    currency: Currency,
    candidates: Sequence[Candidate],
    rates: RateTable = None,
    settled_by_id: UUID | None = None,
    now: datetime | None = None,
) -> Allocation:
    """
    Apply a payment to candidates in the order given, each as far as it will go.

    Amounts are compared in the settlement currency. Candidates in another
    currency are converted with their transaction's rate snapshot, or with
    rates when the transaction has none. A split whose remaining drops to
    within SETTLED_EPSILON is marked fully settled.

    Args:
        amount: Payment amount in currency
        currency: Settlement currency
        candidates: Outstanding splits, already in FIFO order
        rates: Fallback rate table for transactions without a snapshot
        settled_by_id: User recorded on splits this payment fully settles
        now: Timestamp recorded on fully settled splits

    Returns:
        Allocation with per-split breakdown and updated split copies
    """
    now = now or datetime.now()
    allocation = Allocation(currency=currency, requested_amount=amount)

    pending: list[tuple[Candidate, Decimal]] = []
    for candidate in candidates:
        tx = candidate.transaction
        table = tx.exchange_rates or rates
        remaining = quantize(
            convert(candidate.split.remaining, tx.currency, currency, table), currency
        )
        if remaining <= 0:
            continue
        pending.append((candidate, remaining))
        allocation.balance_before += remaining

    left = amount
    for candidate, remaining in pending:
        if left <= 0:
            break

        split, tx = candidate
        table = tx.exchange_rates or rates
        to_apply = min(left, remaining)
        fully_settled = remaining - to_apply <= SETTLED_EPSILON

        if fully_settled:
            split_applied = split.remaining
            new_settled = split.amount
        else:
            split_applied = min(
                quantize(convert(to_apply, currency, tx.currency, table), tx.currency),
                split.remaining,
            )
            new_settled = split.progress + split_applied

        update: dict[str, object] = {"settled_amount": new_settled, "is_settled": fully_settled}
        if fully_settled:
            update["settled_at"] = now
            update["settled_by_id"] = settled_by_id
        allocation.updated_splits.append(split.model_copy(update=update))
        allocation.applied.append(
            AppliedSplit(
                split_id=split.id,
                transaction_id=tx.id,
                amount_applied=to_apply,
                split_amount_applied=split_applied,
                fully_settled=fully_settled,
            )
        )
        allocation.amount_applied += to_apply
        left -= to_apply

    return allocation


def pick_settlement_rates(
    candidates: Sequence[Candidate], supplied: RateTable = None
) -> RateTable:
    """Rates to convert with: the caller's, else the oldest candidate transaction's snapshot."""
    if supplied is not None:
        return supplied
    for candidate in candidates:
        if candidate.transaction.exchange_rates is not None:
            return candidate.transaction.exchange_rates
    return None


def allocated_rates(
    candidates: Sequence[Candidate], allocation: Allocation, fallback: RateTable = None
) -> RateTable:
    """
    Rates to snapshot on a settlement: those of the oldest transaction it paid into.

    Only transactions the allocation touched count. When none of them carries
    a snapshot, fallback (the table the allocation converted with) is used.
    """
    touched = {applied.transaction_id for applied in allocation.applied}
    for candidate in candidates:
        tx = candidate.transaction
        if tx.id in touched and tx.exchange_rates is not None:
            return tx.exchange_rates
    return fallback


# === Activity feed ===


def _transaction_item(
    tx: Transaction,
    splits: Sequence[Split],
    friend: Friend,
    self_friend: Friend,
    display_currency: Currency,
) -> FeedItem | None:
    friend_split = next((s for s in splits if s.friend_id == friend.id), None)
    self_split = next((s for s in splits if s.friend_id == self_friend.id), None)
    if friend_split is None or self_split is None:
        return None

    if tx.paid_by_id == self_friend.id:
        relevant, is_owed = friend_split, True
    elif tx.paid_by_id == friend.id:
        relevant, is_owed = self_split, False
    else:
        relevant, is_owed = friend_split, None

    # A third party paid, so nothing is owed between this pair
    is_settled = True if is_owed is None else not relevant.is_outstanding

    return FeedItem(
        item_type=FeedItemType.TRANSACTION,
        id=tx.id,
        timestamp=tx.date,
        title=f"{tx.emoji} {tx.title}".strip(),
        amount=relevant.amount,
        currency=tx.currency,
        is_owed=is_owed,
        is_settled=is_settled,
        converted_amount=quantize(
            convert(relevant.amount, tx.currency, display_currency, tx.exchange_rates),
            display_currency,
        ),
        display_currency=display_currency,
    )


def _settlement_item(settlement: Settlement, display_currency: Currency) -> FeedItem:
    rates = settlement.exchange_rates
    balance_before = settlement.balance_before_settlement
    return FeedItem(
        item_type=FeedItemType.SETTLEMENT,
        id=settlement.id,
        timestamp=settlement.settled_at,
        title=settlement.note or "Settlement",
        amount=settlement.amount,
        currency=settlement.currency,
        is_settled=True,
        paid_by_user=settlement.is_user_paying,
        converted_amount=quantize(
            convert(settlement.amount, settlement.currency, display_currency, rates),
            display_currency,
        ),
        converted_balance_before=(
            quantize(
                convert(balance_before, settlement.currency, display_currency, rates),
                display_currency,
            )
            if balance_before is not None
            else None
        ),
        display_currency=display_currency,
    )


def merged_feed(
    friend: Friend,
    self_friend: Friend,
    transactions: Iterable[Transaction],
    splits_by_transaction: Mapping[UUID, Sequence[Split]],
    settlements: Iterable[Settlement],
    display_currency: Currency,
) -> list[FeedItem]:
    """
    Merge transactions and settlements with a friend into one feed, newest first.

    Transaction items show the relevant split's original amount, not what
    is still outstanding. Transactions that do not involve both the user
    and the friend are left out. Equal timestamps keep input order.
    """
    items: list[FeedItem] = []
    for tx in transactions:
        item = _transaction_item(
            tx, splits_by_transaction.get(tx.id, ()), friend, self_friend, display_currency
        )
        if item is not None:
            items.append(item)

    items.extend(_settlement_item(s, display_currency) for s in settlements)

    # sorted() is stable, including with reverse=True
    return sorted(items, key=lambda item: item.timestamp, reverse=True)


def partition_feed(items: Sequence[FeedItem]) -> ActivityFeed:
    """
    Split a newest-first feed at the last point everything was cleared.

    The boundary is the most recent settlement after which every older
    transaction item is settled. It and everything older is history;
    anything newer is recent. Without such a settlement, all items are recent.
    """
    boundary: int | None = None
    older_all_settled = True

    for index in range(len(items) - 1, -1, -1):
        item = items[index]
        if item.item_type == FeedItemType.SETTLEMENT and older_all_settled:
            boundary = index
        elif item.item_type == FeedItemType.TRANSACTION and not item.is_settled:
            older_all_settled = False

    if boundary is None:
        return ActivityFeed(items=list(items), recent=list(items), older=[])
    return ActivityFeed(
        items=list(items), recent=list(items[:boundary]), older=list(items[boundary:])
    )
