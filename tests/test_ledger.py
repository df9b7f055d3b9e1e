"""Tests for Break Even ledger - splits, balances, FIFO allocation and the activity feed."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from breakeven.ledger import (
    Candidate,
    allocate_fifo,
    allocated_rates,
    balance_with,
    compute_equal_splits,
    compute_item_splits,
    compute_share_splits,
    merged_feed,
    order_candidates,
    partition_feed,
    settlement_candidates,
    transaction_status,
    validate_splits,
)
from breakeven.models import (
    Currency,
    ExchangeRates,
    FeedItem,
    FeedItemType,
    Friend,
    LineItem,
    Settlement,
    SettlementDirection,
    Split,
    Transaction,
    User,
)


@pytest.fixture
def user() -> User:
    return User(name="Alice", email="alice@example.com")


@pytest.fixture
def self_friend(user: User) -> Friend:
    return Friend(owner_id=user.id, linked_user_id=user.id, name="Alice", is_self=True)


@pytest.fixture
def friend(user: User) -> Friend:
    return Friend(owner_id=user.id, name="Bob")


def _tx(
    user: User,
    payer: Friend,
    amount: str,
    date: datetime,
    currency: Currency = Currency.USD,
    rates: ExchangeRates | None = None,
) -> Transaction:
    return Transaction(
        created_by_id=user.id,
        paid_by_id=payer.id,
        title="Expense",
        total_amount=Decimal(amount),
        currency=currency,
        exchange_rates=rates,
        date=date,
        created_at=date,
    )


def _split(
    tx: Transaction,
    owner: Friend,
    amount: str,
    is_settled: bool = False,
    settled_amount: Decimal | None = None,
) -> Split:
    if settled_amount is None:
        settled_amount = Decimal(amount) if is_settled else Decimal("0")
    return Split(
        transaction_id=tx.id,
        friend_id=owner.id,
        amount=Decimal(amount),
        is_settled=is_settled,
        settled_amount=settled_amount,
        created_at=tx.created_at,
    )


class TestComputeSplits:
    """Tests for split helpers."""

    def test_equal_split_three_ways(self) -> None:
        """$120.50 three ways: the last person absorbs the rounding remainder."""
        people = [uuid4(), uuid4(), uuid4()]
        shares = compute_equal_splits(Decimal("120.50"), "USD", people)

        assert [s.amount for s in shares] == [
            Decimal("40.17"),
            Decimal("40.17"),
            Decimal("40.16"),
        ]
        assert sum(s.amount for s in shares) == Decimal("120.50")

    def test_equal_split_jpy(self) -> None:
        """Yen shares are whole units."""
        shares = compute_equal_splits(Decimal("1000"), "JPY", [uuid4(), uuid4(), uuid4()])
        assert [s.amount for s in shares] == [Decimal("333"), Decimal("333"), Decimal("334")]

    def test_equal_split_no_participants(self) -> None:
        with pytest.raises(ValueError, match="zero participants"):
            compute_equal_splits(Decimal("10"), "USD", [])

    def test_share_split_records_percentage(self) -> None:
        """Shares 2:1:1 give 50/25/25 percent."""
        a, b, c = uuid4(), uuid4(), uuid4()
        shares = compute_share_splits(Decimal("100"), "USD", {a: 2, b: 1, c: 1})

        assert [s.amount for s in shares] == [Decimal("50.00"), Decimal("25.00"), Decimal("25")]
        assert shares[0].percentage == Decimal("50")

    def test_item_split(self) -> None:
        """Shared items are divided between the people they are assigned to."""
        a, b = uuid4(), uuid4()
        items = [
            LineItem(name="Pizza", unit_price=Decimal("20"), assigned_to_ids=[a, b]),
            LineItem(name="Beer", quantity=2, unit_price=Decimal("6"), assigned_to_ids=[b]),
        ]
        shares = compute_item_splits(items, "USD")

        assert shares[0].friend_id == a
        assert shares[0].amount == Decimal("10.00")
        assert shares[1].amount == Decimal("22")

    def test_item_unassigned(self) -> None:
        items = [LineItem(name="Mystery", unit_price=Decimal("5"))]
        with pytest.raises(ValueError, match="not assigned"):
            compute_item_splits(items, "USD")

    def test_validate_splits(self) -> None:
        """Sums within a cent pass, anything further off fails."""
        validate_splits([Decimal("33.33"), Decimal("33.33"), Decimal("33.33")], Decimal("100"))
        with pytest.raises(ValueError, match="Splits sum to"):
            validate_splits([Decimal("30"), Decimal("30")], Decimal("100"))


class TestTransactionStatus:
    """Tests for transaction_status."""

    def test_statuses(self, user: User, friend: Friend, self_friend: Friend) -> None:
        tx = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        paid = _split(tx, self_friend, "10", settled_amount=Decimal("10"), is_settled=True)
        owed = _split(tx, friend, "10")

        assert transaction_status([paid, owed]) == "partial"
        assert transaction_status([owed]) == "pending"
        assert transaction_status([paid]) == "settled"


class TestBalanceWith:
    """Tests for balance_with."""

    def test_user_paid(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """The friend owes their unsettled share of what the user paid."""
        tx = _tx(user, self_friend, "120.50", datetime(2024, 1, 1))
        friend_split = _split(tx, friend, "40.17")
        self_split = _split(tx, self_friend, "40.17", settled_amount=Decimal("40.17"))

        balance = balance_with(
            user, friend, self_friend, [friend_split], [self_split], {tx.id: tx}
        )

        assert balance.friend_owes_user == Decimal("40.17")
        assert balance.user_owes_friend == Decimal("0")
        assert balance.net_balance == Decimal("40.17")
        assert balance.currency == Currency.USD

    def test_both_directions_net(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Debts in both directions offset in net_balance."""
        tx1 = _tx(user, self_friend, "60", datetime(2024, 1, 1))
        tx2 = _tx(user, friend, "50", datetime(2024, 1, 2))
        friend_splits = [_split(tx1, friend, "30")]
        self_splits = [_split(tx2, self_friend, "25")]
        txs = {tx1.id: tx1, tx2.id: tx2}

        balance = balance_with(user, friend, self_friend, friend_splits, self_splits, txs)

        assert balance.friend_owes_user == Decimal("30")
        assert balance.user_owes_friend == Decimal("25")
        assert balance.net_balance == balance.friend_owes_user - balance.user_owes_friend
        assert balance.net_balance == Decimal("5")

    def test_symmetry(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Swapping the two sides negates the net balance."""
        tx1 = _tx(user, self_friend, "60", datetime(2024, 1, 1))
        tx2 = _tx(user, friend, "90", datetime(2024, 1, 2))
        friend_splits = [_split(tx1, friend, "30"), _split(tx2, friend, "45", is_settled=True)]
        self_splits = [_split(tx1, self_friend, "30"), _split(tx2, self_friend, "45")]
        txs = {tx1.id: tx1, tx2.id: tx2}

        mine = balance_with(user, friend, self_friend, friend_splits, self_splits, txs)
        theirs = balance_with(user, self_friend, friend, self_splits, friend_splits, txs)

        assert mine.net_balance == -theirs.net_balance
        assert mine.net_balance == Decimal("-15")

    def test_partial_progress(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Only the remaining amount counts."""
        tx = _tx(user, self_friend, "40", datetime(2024, 1, 1))
        split = _split(tx, friend, "20", settled_amount=Decimal("15"))

        balance = balance_with(user, friend, self_friend, [split], [], {tx.id: tx})

        assert balance.friend_owes_user == Decimal("5.00")

    def test_cross_currency(
        self, user: User, friend: Friend, self_friend: Friend, sample_rates: ExchangeRates
    ) -> None:
        """A €39 debt shows as $42.39, with the original amount in the breakdown."""
        tx = _tx(user, self_friend, "78", datetime(2024, 1, 1), Currency.EUR, sample_rates)
        split = _split(tx, friend, "39")

        balance = balance_with(user, friend, self_friend, [split], [], {tx.id: tx})

        assert balance.friend_owes_user == Decimal("42.39")
        assert balance.by_currency["EUR"].friend_owes == Decimal("39")
        assert balance.rates_complete

    def test_missing_rates(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Without a usable snapshot the amount is counted unconverted and flagged."""
        tx = _tx(user, self_friend, "20", datetime(2024, 1, 1), Currency.EUR)
        split = _split(tx, friend, "10")

        balance = balance_with(user, friend, self_friend, [split], [], {tx.id: tx})

        assert balance.friend_owes_user == Decimal("10.00")
        assert not balance.rates_complete

    def test_third_party_payer_ignored(
        self, user: User, friend: Friend, self_friend: Friend
    ) -> None:
        """Splits in transactions paid by someone else don't count between this pair."""
        carol = Friend(owner_id=user.id, name="Carol")
        tx = _tx(user, carol, "30", datetime(2024, 1, 1))

        friend_splits = [_split(tx, friend, "10")]
        self_splits = [_split(tx, self_friend, "10")]

        balance = balance_with(
            user, friend, self_friend, friend_splits, self_splits, {tx.id: tx}
        )

        assert balance.is_settled_up

    def test_idempotent(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Repeated calls give identical results."""
        tx = _tx(user, self_friend, "30", datetime(2024, 1, 1))
        splits = [_split(tx, friend, "10")]

        first = balance_with(user, friend, self_friend, splits, [], {tx.id: tx})
        second = balance_with(user, friend, self_friend, splits, [], {tx.id: tx})

        assert first == second
        assert first.model_dump() == second.model_dump()


class TestAllocateFifo:
    """Tests for FIFO settlement allocation."""

    @pytest.fixture
    def candidates(self, user: User, friend: Friend, self_friend: Friend) -> list[Candidate]:
        """Friend owes $10 (Jan 1), $20 (Jan 5) and $15 (Jan 10), given out of order."""
        result = []
        for day, amount in [(10, "15"), (1, "10"), (5, "20")]:
            tx = _tx(user, self_friend, amount, datetime(2024, 1, day))
            result.append(Candidate(_split(tx, friend, amount), tx))
        return result

    def test_fifo_order(self, candidates: list[Candidate]) -> None:
        """Oldest debts are cleared first; the rest are untouched."""
        ordered = order_candidates(candidates)
        allocation = allocate_fifo(Decimal("25"), Currency.USD, ordered)

        assert [c.transaction.date.day for c in ordered] == [1, 5, 10]
        assert len(allocation.applied) == 2

        jan1, jan5 = allocation.updated_splits
        assert jan1.is_settled
        assert jan1.remaining == Decimal("0")
        assert not jan5.is_settled
        assert jan5.settled_amount == Decimal("15")
        assert jan5.remaining == Decimal("5")

        untouched = ordered[2].split
        assert untouched.id not in {s.id for s in allocation.updated_splits}

    def test_conservation(self, candidates: list[Candidate]) -> None:
        """Per-split amounts add up to the applied total."""
        allocation = allocate_fifo(Decimal("25"), Currency.USD, order_candidates(candidates))

        assert sum(a.amount_applied for a in allocation.applied) == allocation.amount_applied
        assert allocation.amount_applied == Decimal("25")
        assert allocation.unapplied_amount == Decimal("0")
        assert allocation.balance_before == Decimal("45")

    def test_overpayment(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Paying $50 against $30 outstanding applies $30 and leaves $20 unapplied."""
        tx = _tx(user, self_friend, "60", datetime(2024, 1, 1))
        candidates = [Candidate(_split(tx, friend, "30"), tx)]

        allocation = allocate_fifo(Decimal("50"), Currency.USD, candidates)

        assert allocation.amount_applied == Decimal("30")
        assert allocation.unapplied_amount == Decimal("20")
        assert allocation.updated_splits[0].is_settled

    def test_nothing_outstanding(self) -> None:
        allocation = allocate_fifo(Decimal("10"), Currency.USD, [])
        assert allocation.amount_applied == Decimal("0")
        assert allocation.unapplied_amount == Decimal("10")
        assert allocation.applied == []

    def test_settled_metadata(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Fully settled splits record who settled them and when."""
        tx = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        now = datetime(2024, 2, 1, 9, 0)

        allocation = allocate_fifo(
            Decimal("10"),
            Currency.USD,
            [Candidate(_split(tx, friend, "10"), tx)],
            settled_by_id=user.id,
            now=now,
        )

        split = allocation.updated_splits[0]
        assert split.settled_at == now
        assert split.settled_by_id == user.id

    def test_cross_currency(
        self, user: User, friend: Friend, self_friend: Friend, sample_rates: ExchangeRates
    ) -> None:
        """A USD payment against a EUR split is converted with the transaction's snapshot."""
        tx = _tx(user, self_friend, "92", datetime(2024, 1, 1), Currency.EUR, sample_rates)
        candidates = [Candidate(_split(tx, friend, "46"), tx)]

        allocation = allocate_fifo(Decimal("25"), Currency.USD, candidates)

        assert allocation.balance_before == Decimal("50.00")
        split = allocation.updated_splits[0]
        assert split.settled_amount == Decimal("23.00")
        assert allocation.applied[0].split_amount_applied == Decimal("23.00")
        assert allocation.applied[0].amount_applied == Decimal("25")

    def test_within_epsilon_fully_settles(
        self, user: User, friend: Friend, self_friend: Friend
    ) -> None:
        """Leaving less than a cent marks the split settled at its full amount."""
        tx = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        candidates = [Candidate(_split(tx, friend, "10"), tx)]

        allocation = allocate_fifo(Decimal("9.99"), Currency.USD, candidates)

        split = allocation.updated_splits[0]
        assert split.is_settled
        assert split.settled_amount == Decimal("10")

    def test_legacy_split_partially_settled(
        self, user: User, friend: Friend, self_friend: Friend
    ) -> None:
        """A split without settled_amount starts from zero progress and gains one."""
        tx = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        legacy = Split(transaction_id=tx.id, friend_id=friend.id, amount=Decimal("10"))
        assert legacy.settled_amount is None

        allocation = allocate_fifo(Decimal("4"), Currency.USD, [Candidate(legacy, tx)])

        split = allocation.updated_splits[0]
        assert split.settled_amount == Decimal("4")
        assert not split.is_settled
        assert split.remaining == Decimal("6")
        assert allocation.balance_before == Decimal("10")

    def test_legacy_settled_split_skipped(
        self, user: User, friend: Friend, self_friend: Friend
    ) -> None:
        """A boolean-settled split without settled_amount has nothing left to pay."""
        old = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        new = _tx(user, self_friend, "20", datetime(2024, 1, 2))
        legacy = Split(
            transaction_id=old.id, friend_id=friend.id, amount=Decimal("10"), is_settled=True
        )
        candidates = [Candidate(legacy, old), Candidate(_split(new, friend, "10"), new)]

        allocation = allocate_fifo(Decimal("5"), Currency.USD, candidates)

        assert [a.transaction_id for a in allocation.applied] == [new.id]
        assert allocation.balance_before == Decimal("10")


class TestAllocatedRates:
    """Tests for the rate snapshot recorded on a settlement."""

    def test_untouched_transaction_rates_not_used(
        self, user: User, friend: Friend, self_friend: Friend, sample_rates: ExchangeRates
    ) -> None:
        """Only transactions the payment reached can supply the snapshot."""
        oldest = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        newer = _tx(user, self_friend, "20", datetime(2024, 1, 5), rates=sample_rates)
        candidates = [
            Candidate(_split(oldest, friend, "10"), oldest),
            Candidate(_split(newer, friend, "10"), newer),
        ]

        allocation = allocate_fifo(Decimal("5"), Currency.USD, candidates)

        assert allocated_rates(candidates, allocation) is None

    def test_touched_transaction_rates(
        self, user: User, friend: Friend, self_friend: Friend, sample_rates: ExchangeRates
    ) -> None:
        oldest = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        newer = _tx(user, self_friend, "20", datetime(2024, 1, 5), rates=sample_rates)
        candidates = [
            Candidate(_split(oldest, friend, "10"), oldest),
            Candidate(_split(newer, friend, "10"), newer),
        ]

        allocation = allocate_fifo(Decimal("15"), Currency.USD, candidates)

        assert allocated_rates(candidates, allocation) == sample_rates

    def test_fallback_when_no_snapshot(
        self, user: User, friend: Friend, self_friend: Friend, sample_rates: ExchangeRates
    ) -> None:
        tx = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        candidates = [Candidate(_split(tx, friend, "10"), tx)]

        allocation = allocate_fifo(Decimal("5"), Currency.USD, candidates, sample_rates)

        assert allocated_rates(candidates, allocation, sample_rates) == sample_rates


class TestSettlementCandidates:
    """Tests for settlement_candidates."""

    def test_direction_selects_side(
        self, user: User, friend: Friend, self_friend: Friend
    ) -> None:
        """from_friend pays down the friend's debts, to_friend the user's."""
        tx1 = _tx(user, self_friend, "20", datetime(2024, 1, 1))
        tx2 = _tx(user, friend, "40", datetime(2024, 1, 2))
        friend_splits = [_split(tx1, friend, "10"), _split(tx2, friend, "20", is_settled=True)]
        self_splits = [
            _split(tx1, self_friend, "10", is_settled=True),
            _split(tx2, self_friend, "20"),
        ]
        txs = {tx1.id: tx1, tx2.id: tx2}

        from_friend = settlement_candidates(
            SettlementDirection.FROM_FRIEND, friend, self_friend, friend_splits, self_splits, txs
        )
        to_friend = settlement_candidates(
            SettlementDirection.TO_FRIEND, friend, self_friend, friend_splits, self_splits, txs
        )

        assert [c.split.id for c in from_friend] == [friend_splits[0].id]
        assert [c.split.id for c in to_friend] == [self_splits[1].id]


class TestActivityFeed:
    """Tests for merged_feed and partition_feed."""

    def _item(self, kind: FeedItemType, day: int, settled: bool = True) -> FeedItem:
        return FeedItem(
            item_type=kind,
            id=uuid4(),
            timestamp=datetime(2024, 1, day),
            title=f"day {day}",
            amount=Decimal("10"),
            currency=Currency.USD,
            is_settled=settled,
        )

    def test_merged_feed(self, user: User, friend: Friend, self_friend: Friend) -> None:
        """Transactions and settlements interleave newest first with the right amounts."""
        tx1 = _tx(user, self_friend, "30", datetime(2024, 1, 1))
        tx2 = _tx(user, friend, "40", datetime(2024, 1, 3))
        splits = {
            tx1.id: [_split(tx1, self_friend, "15", is_settled=True), _split(tx1, friend, "15")],
            tx2.id: [_split(tx2, self_friend, "20"), _split(tx2, friend, "20", is_settled=True)],
        }
        settlement = Settlement(
            created_by_id=user.id,
            friend_id=friend.id,
            amount=Decimal("5"),
            currency=Currency.USD,
            direction=SettlementDirection.FROM_FRIEND,
            settled_at=datetime(2024, 1, 2),
        )

        items = merged_feed(friend, self_friend, [tx1, tx2], splits, [settlement], Currency.USD)

        assert [i.item_type for i in items] == [
            FeedItemType.TRANSACTION,
            FeedItemType.SETTLEMENT,
            FeedItemType.TRANSACTION,
        ]
        newest, _, oldest = items
        assert newest.is_owed is False
        assert newest.amount == Decimal("20")
        assert oldest.is_owed is True
        assert oldest.amount == Decimal("15")
        assert not oldest.is_settled
        assert items[1].title == "Settlement"
        assert items[1].paid_by_user is False

    def test_equal_timestamps_keep_input_order(
        self, user: User, friend: Friend, self_friend: Friend
    ) -> None:
        when = datetime(2024, 1, 1)
        tx = _tx(user, self_friend, "20", when)
        splits = {tx.id: [_split(tx, self_friend, "10"), _split(tx, friend, "10")]}
        settlement = Settlement(
            created_by_id=user.id,
            friend_id=friend.id,
            amount=Decimal("10"),
            currency=Currency.USD,
            direction=SettlementDirection.FROM_FRIEND,
            settled_at=when,
        )

        items = merged_feed(friend, self_friend, [tx], splits, [settlement], Currency.USD)

        assert [i.item_type for i in items] == [FeedItemType.TRANSACTION, FeedItemType.SETTLEMENT]

    def test_partition_at_last_settle_up(self) -> None:
        """Days 1, 3, 5 settled on day 6; a new expense on day 8 is recent."""
        T, S = FeedItemType.TRANSACTION, FeedItemType.SETTLEMENT
        items = [
            self._item(T, 8, settled=False),
            self._item(S, 6),
            self._item(T, 5),
            self._item(T, 3),
            self._item(T, 1),
        ]

        feed = partition_feed(items)

        assert feed.recent == items[:1]
        assert feed.older == items[1:]
        assert feed.items == items

    def test_no_settlement(self) -> None:
        """Without any settlement everything is recent."""
        items = [self._item(FeedItemType.TRANSACTION, 2), self._item(FeedItemType.TRANSACTION, 1)]
        feed = partition_feed(items)
        assert feed.recent == items
        assert feed.older == []

    def test_unsettled_history_blocks_boundary(self) -> None:
        """A settlement that left older debts open is not a boundary."""
        T, S = FeedItemType.TRANSACTION, FeedItemType.SETTLEMENT
        items = [self._item(T, 8), self._item(S, 6), self._item(T, 1, settled=False)]

        feed = partition_feed(items)

        assert feed.recent == items
        assert feed.older == []

    def test_most_recent_qualifying_settlement(self) -> None:
        """With several qualifying settlements the newest one is the boundary."""
        T, S = FeedItemType.TRANSACTION, FeedItemType.SETTLEMENT
        items = [
            self._item(T, 9, settled=False),
            self._item(S, 7),
            self._item(T, 5),
            self._item(S, 3),
            self._item(T, 1),
        ]

        feed = partition_feed(items)

        assert feed.recent == items[:1]
        assert feed.older == items[1:]

    def test_empty(self) -> None:
        feed = partition_feed([])
        assert feed.items == feed.recent == feed.older == []
