"""Ledger state - indexed record lookups and atomic writes, persisted to a JSON file."""

import json
import logging
import os
import threading
from collections import defaultdict
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError

from .models import (
    ExchangeRates,
    Friend,
    Invitation,
    InvitationStatus,
    Settlement,
    Split,
    Transaction,
    User,
)

logger = logging.getLogger(__name__)

STATE_DIR_ENV = "BREAKEVEN_STATE_DIR"
MAX_RATE_TABLES = 10

TABLES: dict[str, type[BaseModel]] = {
    "users": User,
    "friends": Friend,
    "transactions": Transaction,
    "splits": Split,
    "settlements": Settlement,
    "invitations": Invitation,
}


def default_state_dir() -> Path:
    """State directory, respecting BREAKEVEN_STATE_DIR."""
    env_dir = os.environ.get(STATE_DIR_ENV)
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".breakeven"


class LedgerStore:
    """
    Record store for users, friends, transactions, splits, settlements and invitations.

    State is persisted to ~/.breakeven/ledger.json. Records are treated as
    immutable: updates replace the stored model with a modified copy.

    Every write made inside ``atomic()`` is applied as one unit. Atomic
    blocks are serialized across threads, rolled back in full if the block
    raises, and written to disk once when the outermost block exits.
    """

    def __init__(self, state_dir: str | Path | None = None):
        """
        Initialize LedgerStore.

        Args:
            state_dir: Directory for state files (default: ~/.breakeven)
        """
        if state_dir is None:
            state_dir = default_state_dir()
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.ledger_file = self.state_dir / "ledger.json"

        self._users: dict[UUID, User] = {}
        self._friends: dict[UUID, Friend] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._splits: dict[UUID, Split] = {}
        self._settlements: dict[UUID, Settlement] = {}
        self._invitations: dict[UUID, Invitation] = {}
        self._rates: list[ExchangeRates] = []

        self._splits_by_friend: dict[UUID, set[UUID]] = defaultdict(set)
        self._splits_by_transaction: dict[UUID, set[UUID]] = defaultdict(set)

        self._lock = threading.RLock()
        self._depth = 0

        self._load()

    # === Persistence ===

    def _tables(self) -> dict[str, dict[UUID, Any]]:
        return {
            "users": self._users,
            "friends": self._friends,
            "transactions": self._transactions,
            "splits": self._splits,
            "settlements": self._settlements,
            "invitations": self._invitations,
        }

    def _load(self) -> None:
        """Load state from disk."""
        if not self.ledger_file.exists():
            return

        try:
            with open(self.ledger_file) as f:
                data = json.load(f)
            for name, model in TABLES.items():
                table = self._tables()[name]
                for record in data.get(name, []):
                    obj = model.model_validate(record)
                    table[obj.id] = obj  # type: ignore[attr-defined]
            self._rates = [ExchangeRates.model_validate(r) for r in data.get("exchange_rates", [])]
        except (json.JSONDecodeError, ValidationError) as e:
            corrupt = self.ledger_file.with_suffix(".json.corrupt")
            logger.error("Unreadable ledger state (%s), moved to %s", e, corrupt)
            self.ledger_file.replace(corrupt)
            for table in self._tables().values():
                table.clear()
            self._rates = []

        self._reindex()

    def _save(self) -> None:
        """Save state to disk."""
        data: dict[str, Any] = {
            name: [record.model_dump(mode="json") for record in table.values()]
            for name, table in self._tables().items()
        }
        data["exchange_rates"] = [r.model_dump(mode="json") for r in self._rates]

        with open(self.ledger_file, "w") as f:
            json.dump(data, f, indent=2, default=str)

    def _reindex(self) -> None:
        self._splits_by_friend = defaultdict(set)
        self._splits_by_transaction = defaultdict(set)
        for split in self._splits.values():
            self._splits_by_friend[split.friend_id].add(split.id)
            self._splits_by_transaction[split.transaction_id].add(split.id)

    def _commit(self) -> None:
        """Persist a write, unless it is part of an atomic block."""
        if self._depth == 0:
            self._save()

    # === Atomicity ===

    @contextmanager
    def atomic(self) -> Iterator["LedgerStore"]:
        """Run a read-modify-write sequence as one serialized, all-or-nothing unit."""
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            snapshot = {name: dict(table) for name, table in self._tables().items()}
            rates_snapshot = list(self._rates)
            self._depth = 1
            try:
                yield self
            except Exception:
                for name, table in self._tables().items():
                    table.clear()
                    table.update(snapshot[name])
                self._rates = rates_snapshot
                self._reindex()
                raise
            finally:
                self._depth = 0
            self._save()

    # === Users ===

    def get_user(self, user_id: UUID) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def find_user_by_email(self, email: str) -> User | None:
        email = email.strip().lower()
        with self._lock:
            return next((u for u in self._users.values() if u.email.lower() == email), None)

    def list_users(self) -> list[User]:
        with self._lock:
            return list(self._users.values())

    def put_user(self, user: User) -> User:
        """Insert or replace a user."""
        with self._lock:
            self._users[user.id] = user
            self._commit()
        return user

    # === Friends ===

    def get_friend(self, friend_id: UUID) -> Friend | None:
        with self._lock:
            return self._friends.get(friend_id)

    def list_friends(self, owner_id: UUID) -> list[Friend]:
        with self._lock:
            return [f for f in self._friends.values() if f.owner_id == owner_id]

    def get_self_friend(self, owner_id: UUID) -> Friend | None:
        """The owner's own "Me" entry."""
        with self._lock:
            return next(
                (f for f in self._friends.values() if f.owner_id == owner_id and f.is_self),
                None,
            )

    def find_friend_by_name(self, owner_id: UUID, name: str) -> Friend | None:
        name = name.strip().lower()
        with self._lock:
            return next(
                (f for f in self.list_friends(owner_id) if f.name.lower() == name),
                None,
            )

    def find_friend_by_email(self, owner_id: UUID, email: str) -> Friend | None:
        email = email.strip().lower()
        with self._lock:
            return next(
                (f for f in self.list_friends(owner_id) if f.email and f.email.lower() == email),
                None,
            )

    def find_friend_linked_to(self, owner_id: UUID, user_id: UUID) -> Friend | None:
        with self._lock:
            return next(
                (
                    f
                    for f in self.list_friends(owner_id)
                    if f.linked_user_id == user_id and not f.is_self
                ),
                None,
            )

    def put_friend(self, friend: Friend) -> Friend:
        """Insert or replace a friend."""
        with self._lock:
            self._friends[friend.id] = friend
            self._commit()
        return friend

    def delete_friend(self, friend_id: UUID) -> bool:
        """Delete a friend. Returns True if deleted."""
        with self._lock:
            if self._friends.pop(friend_id, None) is None:
                return False
            self._commit()
            return True

    # === Transactions ===

    def get_transaction(self, transaction_id: UUID) -> Transaction | None:
        with self._lock:
            return self._transactions.get(transaction_id)

    def list_transactions(self, created_by_id: UUID) -> list[Transaction]:
        """A user's transactions, most recent first."""
        with self._lock:
            txs = [t for t in self._transactions.values() if t.created_by_id == created_by_id]
        return sorted(txs, key=lambda t: t.date, reverse=True)

    def transactions_by_id(self, ids: Iterable[UUID]) -> dict[UUID, Transaction]:
        with self._lock:
            return {i: self._transactions[i] for i in set(ids) if i in self._transactions}

    def insert_transaction(self, transaction: Transaction, splits: Iterable[Split]) -> Transaction:
        """Insert a transaction together with its splits."""
        with self._lock:
            self._transactions[transaction.id] = transaction
            for split in splits:
                self._put_split(split)
            self._commit()
        return transaction

    def delete_transaction(self, transaction_id: UUID) -> bool:
        """Delete a transaction and all of its splits. Returns True if deleted."""
        with self._lock:
            if self._transactions.pop(transaction_id, None) is None:
                return False
            for split_id in list(self._splits_by_transaction.pop(transaction_id, ())):
                split = self._splits.pop(split_id)
                self._splits_by_friend[split.friend_id].discard(split_id)
            self._commit()
            return True

    # === Splits ===

    def get_split(self, split_id: UUID) -> Split | None:
        with self._lock:
            return self._splits.get(split_id)

    def splits_for_friend(self, friend_id: UUID) -> list[Split]:
        with self._lock:
            splits = [self._splits[i] for i in self._splits_by_friend.get(friend_id, ())]
        return sorted(splits, key=lambda s: s.created_at)

    def splits_for_transaction(self, transaction_id: UUID) -> list[Split]:
        with self._lock:
            splits = [self._splits[i] for i in self._splits_by_transaction.get(transaction_id, ())]
        return sorted(splits, key=lambda s: s.created_at)

    def _put_split(self, split: Split) -> None:
        self._splits[split.id] = split
        self._splits_by_friend[split.friend_id].add(split.id)
        self._splits_by_transaction[split.transaction_id].add(split.id)

    def put_split(self, split: Split) -> Split:
        """Insert or replace a split."""
        with self._lock:
            self._put_split(split)
            self._commit()
        return split

    # === Settlements ===

    def get_settlement(self, settlement_id: UUID) -> Settlement | None:
        with self._lock:
            return self._settlements.get(settlement_id)

    def settlements_for_friend(self, friend_id: UUID) -> list[Settlement]:
        """Settlements with a friend, most recent first."""
        with self._lock:
            found = [s for s in self._settlements.values() if s.friend_id == friend_id]
        return sorted(found, key=lambda s: s.settled_at, reverse=True)

    def insert_settlement(self, settlement: Settlement) -> Settlement:
        with self._lock:
            self._settlements[settlement.id] = settlement
            self._commit()
        return settlement

    # === Invitations ===

    def get_invitation(self, invitation_id: UUID) -> Invitation | None:
        with self._lock:
            return self._invitations.get(invitation_id)

    def find_invitation_by_token(self, token: str) -> Invitation | None:
        with self._lock:
            return next((i for i in self._invitations.values() if i.token == token), None)

    def pending_invitation_for_friend(self, friend_id: UUID) -> Invitation | None:
        with self._lock:
            return next(
                (
                    i
                    for i in self._invitations.values()
                    if i.friend_id == friend_id and i.status == InvitationStatus.PENDING
                ),
                None,
            )

    def pending_invitations_for_email(self, email: str) -> list[Invitation]:
        email = email.strip().lower()
        with self._lock:
            return [
                i
                for i in self._invitations.values()
                if i.status == InvitationStatus.PENDING
                and i.recipient_email
                and i.recipient_email.lower() == email
            ]

    def invitations_by_sender(self, sender_id: UUID) -> list[Invitation]:
        """Invitations a user sent, most recent first."""
        with self._lock:
            found = [i for i in self._invitations.values() if i.sender_id == sender_id]
        return sorted(found, key=lambda i: i.created_at, reverse=True)

    def put_invitation(self, invitation: Invitation) -> Invitation:
        """Insert or replace an invitation."""
        with self._lock:
            self._invitations[invitation.id] = invitation
            self._commit()
        return invitation

    # === Exchange rates ===

    def latest_rates(self) -> ExchangeRates | None:
        """Most recently fetched rate table, if any."""
        with self._lock:
            if not self._rates:
                return None
            return max(self._rates, key=lambda r: r.fetched_at)

    def save_rates(self, rates: ExchangeRates) -> None:
        with self._lock:
            self._rates.append(rates)
            del self._rates[:-MAX_RATE_TABLES]
            self._commit()
