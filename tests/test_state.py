"""Tests for Break Even state management."""

from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from breakeven.models import (
    Currency,
    ExchangeRates,
    Friend,
    Invitation,
    InvitationStatus,
    Split,
    Transaction,
    User,
)
from breakeven.state import MAX_RATE_TABLES, LedgerStore


def _transaction(user: User, payer: Friend) -> Transaction:
    return Transaction(
        created_by_id=user.id,
        paid_by_id=payer.id,
        title="Dinner",
        total_amount=Decimal("120.50"),
        currency=Currency.EUR,
    )


class TestLedgerStore:
    """Tests for LedgerStore."""

    def test_init_creates_directory(self, tmp_path: Path) -> None:
        """Test that LedgerStore creates its state directory."""
        state_dir = tmp_path / "breakeven"
        LedgerStore(state_dir)
        assert state_dir.exists()

    def test_default_dir_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """BREAKEVEN_STATE_DIR sets the default location."""
        monkeypatch.setenv("BREAKEVEN_STATE_DIR", str(tmp_path / "from-env"))
        store = LedgerStore()
        assert store.state_dir == tmp_path / "from-env"

    def test_persistence(self, tmp_path: Path) -> None:
        """Records survive a reload with exact decimal amounts."""
        store = LedgerStore(tmp_path)
        user = store.put_user(User(name="Alice", email="alice@example.com"))
        payer = store.put_friend(Friend(owner_id=user.id, name="Alice", is_self=True))
        tx = _transaction(user, payer)
        split = Split(transaction_id=tx.id, friend_id=payer.id, amount=Decimal("40.17"))
        store.insert_transaction(tx, [split])

        reloaded = LedgerStore(tmp_path)

        assert reloaded.get_user(user.id) == user
        assert reloaded.get_transaction(tx.id).total_amount == Decimal("120.50")
        assert reloaded.get_transaction(tx.id).currency == Currency.EUR
        assert reloaded.splits_for_friend(payer.id) == [split]
        assert reloaded.splits_for_transaction(tx.id)[0].amount == Decimal("40.17")

    def test_find_user_by_email_case_insensitive(self, store: LedgerStore) -> None:
        user = store.put_user(User(name="Alice", email="Alice@Example.com"))
        assert store.find_user_by_email("alice@example.com") == user

    def test_find_friend_by_name(self, store: LedgerStore) -> None:
        user = store.put_user(User(name="Alice", email="alice@example.com"))
        bob = store.put_friend(Friend(owner_id=user.id, name="Bob"))
        assert store.find_friend_by_name(user.id, "bob") == bob
        assert store.find_friend_by_name(user.id, "Dan") is None

    def test_delete_transaction_cascades(self, store: LedgerStore) -> None:
        """Deleting a transaction removes its splits."""
        user = store.put_user(User(name="Alice", email="alice@example.com"))
        payer = store.put_friend(Friend(owner_id=user.id, name="Alice", is_self=True))
        tx = _transaction(user, payer)
        split = Split(transaction_id=tx.id, friend_id=payer.id, amount=Decimal("10"))
        store.insert_transaction(tx, [split])

        assert store.delete_transaction(tx.id)

        assert store.get_transaction(tx.id) is None
        assert store.get_split(split.id) is None
        assert store.splits_for_friend(payer.id) == []
        assert not store.delete_transaction(tx.id)

    def test_corrupt_file_is_moved_aside(self, tmp_path: Path) -> None:
        """Unreadable state is set aside and the store starts empty."""
        (tmp_path / "ledger.json").write_text("{not json")

        store = LedgerStore(tmp_path)

        assert store.list_users() == []
        assert (tmp_path / "ledger.json.corrupt").exists()

    def test_invitation_lookups(self, tmp_path: Path) -> None:
        """Invitations persist and are found by token, friend and recipient email."""
        store = LedgerStore(tmp_path)
        sender = store.put_user(User(name="Alice", email="alice@example.com"))
        friend = store.put_friend(Friend(owner_id=sender.id, name="Bob"))
        invitation = store.put_invitation(
            Invitation(
                sender_id=sender.id,
                friend_id=friend.id,
                recipient_email="Bob@Example.com",
                token="tok123",
                expires_at=datetime.now() + timedelta(days=7),
            )
        )

        reloaded = LedgerStore(tmp_path)

        assert reloaded.find_invitation_by_token("tok123") == invitation
        assert reloaded.pending_invitation_for_friend(friend.id) == invitation
        assert reloaded.pending_invitations_for_email("bob@example.com") == [invitation]
        assert reloaded.invitations_by_sender(sender.id) == [invitation]

        accepted = invitation.model_copy(update={"status": InvitationStatus.ACCEPTED})
        reloaded.put_invitation(accepted)
        assert reloaded.pending_invitation_for_friend(friend.id) is None
        assert reloaded.pending_invitations_for_email("bob@example.com") == []

    def test_latest_rates(self, store: LedgerStore) -> None:
        """Only the newest rate tables are kept; latest_rates returns the newest."""
        start = datetime(2024, 1, 1)
        for day in range(MAX_RATE_TABLES + 2):
            store.save_rates(
                ExchangeRates(rates={"USD": 1, "EUR": 0.9}, fetched_at=start + timedelta(days=day))
            )

        latest = store.latest_rates()
        assert latest is not None
        assert latest.fetched_at == start + timedelta(days=MAX_RATE_TABLES + 1)
        assert len(store._rates) == MAX_RATE_TABLES

    def test_no_rates(self, store: LedgerStore) -> None:
        assert store.latest_rates() is None


class TestAtomic:
    """Tests for atomic blocks."""

    def test_rollback_on_error(self, tmp_path: Path) -> None:
        """A failing block leaves no trace in memory or on disk."""
        store = LedgerStore(tmp_path)
        kept = store.put_user(User(name="Alice", email="alice@example.com"))

        with pytest.raises(RuntimeError):
            with store.atomic():
                store.put_user(User(name="Bob", email="bob@example.com"))
                store.put_user(kept.model_copy(update={"name": "Changed"}))
                raise RuntimeError("boom")

        assert [u.name for u in store.list_users()] == ["Alice"]
        assert [u.name for u in LedgerStore(tmp_path).list_users()] == ["Alice"]

    def test_rollback_restores_indexes(self, store: LedgerStore) -> None:
        """Split indexes are rebuilt after a rollback."""
        user = store.put_user(User(name="Alice", email="alice@example.com"))
        payer = store.put_friend(Friend(owner_id=user.id, name="Alice", is_self=True))
        tx = _transaction(user, payer)

        with pytest.raises(ValueError):
            with store.atomic():
                store.insert_transaction(
                    tx, [Split(transaction_id=tx.id, friend_id=payer.id, amount=Decimal("10"))]
                )
                raise ValueError("nope")

        assert store.splits_for_friend(payer.id) == []
        assert store.splits_for_transaction(tx.id) == []

    def test_writes_saved_once_at_end(self, tmp_path: Path) -> None:
        """Writes inside a block reach disk when the outermost block exits."""
        store = LedgerStore(tmp_path)

        with store.atomic():
            store.put_user(User(name="Alice", email="alice@example.com"))
            with store.atomic():
                store.put_user(User(name="Bob", email="bob@example.com"))
            assert not (tmp_path / "ledger.json").exists()

        names = sorted(u.name for u in LedgerStore(tmp_path).list_users())
        assert names == ["Alice", "Bob"]

    def test_nested_error_rolls_back_everything(self, store: LedgerStore) -> None:
        """An error in a nested block undoes the outer block's writes too."""
        with pytest.raises(RuntimeError):
            with store.atomic():
                store.put_user(User(name="Alice", email="alice@example.com"))
                with store.atomic():
                    raise RuntimeError("inner")

        assert store.list_users() == []
