"""Ledger service - orchestrates store → ledger → audit for every user-facing operation.

Writes (transactions, settlements, friend changes) run inside one atomic
store block each. Reads (balances, activity) work from whatever was last
committed.
"""

import logging
import secrets
import string
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from itertools import chain
from pathlib import Path
from typing import Any
from uuid import UUID

from . import ledger
from .audit import log_event
from .fx import RateProvider, RateTable, convert, quantize
from .models import (
    ActivityFeed,
    Currency,
    ExchangeRates,
    Friend,
    FriendBalance,
    InvalidInputError,
    Invitation,
    InvitationStatus,
    LineItem,
    NotFoundError,
    Settlement,
    SettlementDirection,
    SettlementResult,
    Split,
    SplitDetail,
    SplitMethod,
    Transaction,
    TransactionDetail,
    User,
    to_decimal,
)
from .state import LedgerStore

logger = logging.getLogger(__name__)

INVITATION_TTL = timedelta(days=7)
TOKEN_LENGTH = 32
TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token() -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def parse_amount(value: Any) -> Decimal:
    """Parse a strictly positive amount."""
    try:
        amount = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInputError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidInputError(f"Invalid amount: {value!r} (must be greater than zero)")
    return amount


def parse_split_method(value: "str | SplitMethod") -> SplitMethod:
    try:
        return SplitMethod(value)
    except ValueError:
        raise InvalidInputError(f"Invalid split method: {value!r}") from None


class LedgerService:
    """
    Entry point for ledger operations against a LedgerStore.

    Args:
        store: Record store
        rates: Provider for new transactions' rate snapshots (None: no snapshot)
        audit_path: Audit log location (default: BREAKEVEN_AUDIT_PATH or ~/.breakeven)
    """

    def __init__(
        self,
        store: LedgerStore,
        rates: RateProvider | None = None,
        audit_path: Path | None = None,
    ):
        self.store = store
        self.rates = rates
        self.audit_path = audit_path

    def _audit(self, event: Any, user_id: UUID, **details: Any) -> None:
        log_event(event, user_id, details, log_path=self.audit_path)

    # === Lookups ===

    def require_user(self, user_id: UUID) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def require_friend(self, user: User, friend_id: UUID) -> Friend:
        """A friend owned by user. Friends of other users are reported as missing."""
        friend = self.store.get_friend(friend_id)
        if friend is None or friend.owner_id != user.id:
            raise NotFoundError("Friend", friend_id)
        return friend

    def require_self_friend(self, user: User) -> Friend:
        self_friend = self.store.get_self_friend(user.id)
        if self_friend is None:
            raise NotFoundError("Self friend", user.id)
        return self_friend

    def require_transaction(self, user: User, transaction_id: UUID) -> Transaction:
        tx = self.store.get_transaction(transaction_id)
        if tx is None or tx.created_by_id != user.id:
            raise NotFoundError("Transaction", transaction_id)
        return tx

    def resolve_friend(self, user: User, name_or_email: str) -> Friend:
        """Find one of user's friends by name, email, or "me" for the self entry."""
        if name_or_email.strip().lower() in ("me", "self"):
            return self.require_self_friend(user)
        friend = self.store.find_friend_by_name(
            user.id, name_or_email
        ) or self.store.find_friend_by_email(user.id, name_or_email)
        if friend is None:
            raise NotFoundError("Friend", name_or_email)
        return friend

    # === Users ===

    def get_or_create_user(
        self,
        name: str,
        email: str,
        phone: str | None = None,
        default_currency: "str | Currency" = Currency.USD,
    ) -> User:
        """
        Return the user with this email, creating them (and their self friend) if new.

        Pending, unexpired invitations sent to this email are accepted: each
        invited dummy friend is linked to the new account, which gains a
        reciprocal friend entry for the sender.
        """
        if not name.strip() or not email.strip():
            raise InvalidInputError("Name and email are required")
        currency = Currency.parse(default_currency)

        with self.store.atomic():
            existing = self.store.find_user_by_email(email)
            if existing is not None:
                updated = existing.model_copy(update={"name": name, "phone": phone})
                self.store.put_user(updated)
                return updated

            user = User(name=name, email=email.strip(), phone=phone, default_currency=currency)
            self.store.put_user(user)
            self.store.put_friend(
                Friend(
                    owner_id=user.id,
                    linked_user_id=user.id,
                    name=user.name,
                    email=user.email,
                    phone=user.phone,
                    is_dummy=False,
                    is_self=True,
                )
            )

            now = datetime.now()
            linked = []
            for invitation in self.store.pending_invitations_for_email(user.email):
                if invitation.is_expired(now):
                    self.store.put_invitation(
                        invitation.model_copy(update={"status": InvitationStatus.EXPIRED})
                    )
                    continue
                placeholder = self.store.get_friend(invitation.friend_id)
                if placeholder is not None and placeholder.is_dummy:
                    # The sender keeps the name they chose
                    self._link(placeholder, user, adopt_profile=False)
                    linked.append(str(placeholder.id))
                    self.store.put_invitation(
                        invitation.model_copy(update={"status": InvitationStatus.ACCEPTED})
                    )

        self._audit("user_created", user.id, email=user.email, linked_friends=linked)
        logger.info("Created user %s (%s)", user.id, user.email)
        return user

    def update_user(
        self,
        user_id: UUID,
        name: str | None = None,
        phone: str | None = None,
        default_currency: "str | Currency | None" = None,
    ) -> User:
        """Edit a user's profile; the self friend mirrors name and phone."""
        with self.store.atomic():
            user = self.require_user(user_id)
            update: dict[str, Any] = {}
            if name is not None:
                if not name.strip():
                    raise InvalidInputError("Name cannot be empty")
                update["name"] = name
            if phone is not None:
                update["phone"] = phone
            if default_currency is not None:
                update["default_currency"] = Currency.parse(default_currency)
            user = user.model_copy(update=update)
            self.store.put_user(user)

            self_friend = self.store.get_self_friend(user.id)
            if self_friend is not None:
                self.store.put_friend(
                    self_friend.model_copy(update={"name": user.name, "phone": user.phone})
                )

        self._audit("user_updated", user.id, fields=sorted(update))
        return user

    # === Friends ===

    def _link(self, friend: Friend, user: User, adopt_profile: bool = True) -> Friend:
        """Promote a dummy friend to a linked one and give user a reciprocal entry."""
        update: dict[str, Any] = {"linked_user_id": user.id, "is_dummy": False}
        if adopt_profile:
            update.update(name=user.name, email=user.email, phone=user.phone)
        linked = friend.model_copy(update=update)
        self.store.put_friend(linked)

        owner = self.store.get_user(friend.owner_id)
        if owner is not None and self.store.find_friend_linked_to(user.id, owner.id) is None:
            self.store.put_friend(
                Friend(
                    owner_id=user.id,
                    linked_user_id=owner.id,
                    name=owner.name,
                    email=owner.email,
                    phone=owner.phone,
                    is_dummy=False,
                )
            )
        return linked

    def add_friend(
        self,
        user_id: UUID,
        name: str,
        email: str | None = None,
        phone: str | None = None,
    ) -> Friend:
        """
        Add a contact for user.

        An existing friend with the same email is returned as-is. If the email
        belongs to a registered user, the friend is linked immediately;
        otherwise it is a dummy placeholder.
        """
        if not name.strip():
            raise InvalidInputError("Friend name is required")

        with self.store.atomic():
            user = self.require_user(user_id)

            if email:
                if email.strip().lower() == user.email.lower():
                    raise InvalidInputError("Cannot add yourself as a friend")
                existing = self.store.find_friend_by_email(user.id, email)
                if existing is not None:
                    return existing

            friend = self.store.put_friend(
                Friend(owner_id=user.id, name=name, email=email, phone=phone, is_dummy=True)
            )

            registered = self.store.find_user_by_email(email) if email else None
            if registered is not None:
                friend = self._link(friend, registered)

        self._audit("friend_added", user.id, friend_id=friend.id, linked=not friend.is_dummy)
        return friend

    def update_friend(
        self,
        user_id: UUID,
        friend_id: UUID,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> Friend:
        """Edit a dummy friend's details. Linked friends mirror their user and cannot be edited."""
        with self.store.atomic():
            user = self.require_user(user_id)
            friend = self.require_friend(user, friend_id)
            if not friend.is_dummy:
                raise InvalidInputError("Cannot edit linked friends")

            update: dict[str, Any] = {}
            if name is not None:
                update["name"] = name
            if email is not None:
                update["email"] = email
            if phone is not None:
                update["phone"] = phone
            friend = self.store.put_friend(friend.model_copy(update=update))

        self._audit("friend_updated", user.id, friend_id=friend.id, fields=sorted(update))
        return friend

    def link_friend(self, user_id: UUID, friend_id: UUID, linked_user_id: UUID) -> Friend:
        """Merge a dummy friend with a registered user. Linking is never reversed."""
        with self.store.atomic():
            user = self.require_user(user_id)
            friend = self.require_friend(user, friend_id)
            if not friend.is_dummy:
                raise InvalidInputError("Friend is already linked to a user")
            target = self.require_user(linked_user_id)
            if target.id == user.id:
                raise InvalidInputError("Cannot link a friend to yourself")
            friend = self._link(friend, target)

        self._audit("friend_linked", user.id, friend_id=friend.id, linked_user_id=target.id)
        return friend

    def delete_friend(self, user_id: UUID, friend_id: UUID) -> None:
        """Delete a friend with no transaction history."""
        with self.store.atomic():
            user = self.require_user(user_id)
            friend = self.require_friend(user, friend_id)
            if friend.is_self:
                raise InvalidInputError("Cannot delete self")
            if self.store.splits_for_friend(friend.id):
                raise InvalidInputError("Cannot delete friend with transaction history")
            self.store.delete_friend(friend.id)

        self._audit("friend_deleted", user.id, friend_id=friend_id)

    # === Invitations ===

    def _new_token(self) -> str:
        token = generate_token()
        while self.store.find_invitation_by_token(token) is not None:
            token = generate_token()
        return token

    def _require_sent_invitation(self, user: User, invitation_id: UUID) -> Invitation:
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None or invitation.sender_id != user.id:
            raise NotFoundError("Invitation", invitation_id)
        return invitation

    def create_invitation(
        self,
        user_id: UUID,
        friend_id: UUID,
        recipient_email: str | None = None,
        recipient_phone: str | None = None,
    ) -> tuple[Invitation, bool]:
        """
        Invite the person behind a dummy friend to claim it.

        If the friend already has a pending invitation, that one is returned
        unchanged. Recipient contact details default to the friend's.

        Returns:
            (invitation, created) where created is False for an existing invitation

        Raises:
            InvalidInputError: The friend is self or already linked
            NotFoundError: Unknown user or friend
        """
        with self.store.atomic():
            user = self.require_user(user_id)
            friend = self.require_friend(user, friend_id)
            if friend.is_self or not friend.is_dummy:
                raise InvalidInputError("Cannot invite a user who is already linked")

            existing = self.store.pending_invitation_for_friend(friend.id)
            if existing is not None:
                return existing, False

            now = datetime.now()
            invitation = self.store.put_invitation(
                Invitation(
                    sender_id=user.id,
                    friend_id=friend.id,
                    recipient_email=recipient_email or friend.email,
                    recipient_phone=recipient_phone or friend.phone,
                    token=self._new_token(),
                    expires_at=now + INVITATION_TTL,
                    created_at=now,
                )
            )

        self._audit("invitation_created", user.id, invitation_id=invitation.id, friend_id=friend.id)
        return invitation, True

    def get_invitation(self, token: str) -> Invitation | None:
        return self.store.find_invitation_by_token(token)

    def accept_invitation(self, user_id: UUID, token: str) -> Friend:
        """
        Claim the dummy friend an invitation was sent for.

        The friend is linked to the accepting user and takes their profile;
        the accepting user gains a reciprocal friend for the sender. An
        expired invitation is marked expired and rejected.

        Returns:
            The sender's now-linked friend entry
        """
        expired = False
        with self.store.atomic():
            user = self.require_user(user_id)
            invitation = self.store.find_invitation_by_token(token)
            if invitation is None:
                raise NotFoundError("Invitation")
            if invitation.status != InvitationStatus.PENDING:
                raise InvalidInputError("Invitation is no longer pending")
            if invitation.sender_id == user.id:
                raise InvalidInputError("Cannot accept your own invitation")

            if invitation.is_expired():
                self.store.put_invitation(
                    invitation.model_copy(update={"status": InvitationStatus.EXPIRED})
                )
                expired = True
            else:
                friend = self.store.get_friend(invitation.friend_id)
                if friend is None:
                    raise NotFoundError("Friend", invitation.friend_id)
                if not friend.is_dummy:
                    raise InvalidInputError("Friend is already linked to a user")
                friend = self._link(friend, user)
                self.store.put_invitation(
                    invitation.model_copy(update={"status": InvitationStatus.ACCEPTED})
                )

        if expired:
            raise InvalidInputError("Invitation has expired")

        self._audit(
            "invitation_accepted", user.id, invitation_id=invitation.id, friend_id=friend.id
        )
        return friend

    def cancel_invitation(self, user_id: UUID, invitation_id: UUID) -> Invitation:
        with self.store.atomic():
            user = self.require_user(user_id)
            invitation = self._require_sent_invitation(user, invitation_id)
            if invitation.status != InvitationStatus.PENDING:
                raise InvalidInputError("Can only cancel pending invitations")
            invitation = self.store.put_invitation(
                invitation.model_copy(update={"status": InvitationStatus.CANCELLED})
            )

        self._audit("invitation_cancelled", user.id, invitation_id=invitation.id)
        return invitation

    def resend_invitation(self, user_id: UUID, invitation_id: UUID) -> Invitation:
        """Issue a fresh token and expiry, reopening an expired or cancelled invitation."""
        with self.store.atomic():
            user = self.require_user(user_id)
            invitation = self._require_sent_invitation(user, invitation_id)
            if invitation.status == InvitationStatus.ACCEPTED:
                raise InvalidInputError("Invitation has already been accepted")
            friend = self.store.get_friend(invitation.friend_id)
            if friend is None or not friend.is_dummy:
                raise InvalidInputError("Cannot invite a user who is already linked")
            pending = self.store.pending_invitation_for_friend(friend.id)
            if pending is not None and pending.id != invitation.id:
                raise InvalidInputError("Friend already has a pending invitation")
            invitation = self.store.put_invitation(
                invitation.model_copy(
                    update={
                        "token": self._new_token(),
                        "expires_at": datetime.now() + INVITATION_TTL,
                        "status": InvitationStatus.PENDING,
                    }
                )
            )

        self._audit("invitation_resent", user.id, invitation_id=invitation.id)
        return invitation

    def list_sent_invitations(self, user_id: UUID) -> list[Invitation]:
        """Every invitation the user sent, most recent first."""
        user = self.require_user(user_id)
        return self.store.invitations_by_sender(user.id)

    # === Transactions ===

    def create_transaction(
        self,
        user_id: UUID,
        paid_by_id: UUID,
        title: str,
        total_amount: Any,
        currency: "str | Currency",
        splits: Sequence[ledger.Share] | None = None,
        participants: Sequence[UUID] | None = None,
        split_method: "str | SplitMethod" = SplitMethod.EQUAL,
        emoji: str = "📝",
        description: str | None = None,
        items: Sequence[LineItem] = (),
        date: datetime | None = None,
        exchange_rates: ExchangeRates | None = None,
    ) -> Transaction:
        """
        Record a shared expense and one split per participant.

        Shares come from splits when given; otherwise they are computed
        equally among participants, or from items for by-item splits.
        The payer's own split starts fully settled. The rate snapshot is
        exchange_rates, or the rate provider's current table.

        Raises:
            InvalidInputError: Bad amount, currency or method, shares that
                don't sum to the total, or a repeated participant
            NotFoundError: Unknown user, payer or participant
        """
        total = parse_amount(total_amount)
        ccy = Currency.parse(currency)
        method = parse_split_method(split_method)
        if not title.strip():
            raise InvalidInputError("Title is required")

        if splits is None:
            if method == SplitMethod.BY_ITEM and items:
                splits = ledger.compute_item_splits(items, ccy)
            elif method == SplitMethod.EQUAL and participants:
                splits = ledger.compute_equal_splits(total, ccy, participants)
            else:
                raise InvalidInputError(f"Split amounts are required for a {method.value} split")

        friend_ids = [share.friend_id for share in splits]
        if len(set(friend_ids)) != len(friend_ids):
            raise InvalidInputError("Each participant can only appear once")
        if any(share.amount < 0 for share in splits):
            raise InvalidInputError("Split amounts cannot be negative")
        try:
            ledger.validate_splits((share.amount for share in splits), total)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e

        # Fetch before taking the store lock
        if exchange_rates is None and self.rates is not None:
            exchange_rates = self.rates.get_or_fetch_rates()

        now = datetime.now()
        with self.store.atomic():
            user = self.require_user(user_id)
            payer = self.require_friend(user, paid_by_id)
            for friend_id in friend_ids:
                self.require_friend(user, friend_id)

            tx = Transaction(
                created_by_id=user.id,
                paid_by_id=payer.id,
                title=title,
                emoji=emoji,
                description=description,
                total_amount=total,
                currency=ccy,
                split_method=method,
                items=list(items),
                exchange_rates=exchange_rates,
                date=date or now,
                created_at=now,
            )
            records = []
            for share in splits:
                # A payer cannot owe themselves
                is_payer = share.friend_id == payer.id
                records.append(
                    Split(
                        transaction_id=tx.id,
                        friend_id=share.friend_id,
                        amount=share.amount,
                        percentage=share.percentage,
                        is_settled=is_payer,
                        settled_amount=share.amount if is_payer else Decimal("0"),
                        settled_at=now if is_payer else None,
                        settled_by_id=user.id if is_payer else None,
                        created_at=now,
                    )
                )
            self.store.insert_transaction(tx, records)

        self._audit(
            "transaction_created",
            user.id,
            transaction_id=tx.id,
            amount=str(total),
            currency=ccy.value,
            splits=len(records),
        )
        return tx

    def delete_transaction(self, user_id: UUID, transaction_id: UUID) -> None:
        """Delete a transaction together with its splits."""
        with self.store.atomic():
            user = self.require_user(user_id)
            tx = self.require_transaction(user, transaction_id)
            self.store.delete_transaction(tx.id)

        self._audit("transaction_deleted", user.id, transaction_id=transaction_id)

    def transaction_splits(self, user_id: UUID, transaction_id: UUID) -> list[Split]:
        user = self.require_user(user_id)
        tx = self.require_transaction(user, transaction_id)
        return self.store.splits_for_transaction(tx.id)

    def transaction_status(self, user_id: UUID, transaction_id: UUID) -> str:
        return ledger.transaction_status(self.transaction_splits(user_id, transaction_id))

    def _detail(self, tx: Transaction) -> TransactionDetail:
        splits = self.store.splits_for_transaction(tx.id)
        payer = self.store.get_friend(tx.paid_by_id)
        details = []
        for split in splits:
            friend = self.store.get_friend(split.friend_id)
            details.append(
                SplitDetail(split=split, friend_name=friend.name if friend else "Unknown")
            )
        return TransactionDetail(
            transaction=tx,
            payer_name=payer.name if payer else "Unknown",
            splits=details,
            status=ledger.transaction_status(splits),
        )

    def transaction_detail(self, user_id: UUID, transaction_id: UUID) -> TransactionDetail:
        """A transaction with its payer, every split with its friend's name, and its status."""
        user = self.require_user(user_id)
        return self._detail(self.require_transaction(user, transaction_id))

    def list_transactions(self, user_id: UUID) -> list[TransactionDetail]:
        """Every transaction the user recorded, most recent first."""
        user = self.require_user(user_id)
        return [self._detail(tx) for tx in self.store.list_transactions(user.id)]

    # === Balances ===

    def _pair_records(
        self, friend: Friend, self_friend: Friend
    ) -> tuple[list[Split], list[Split], dict[UUID, Transaction]]:
        friend_splits = self.store.splits_for_friend(friend.id)
        self_splits = self.store.splits_for_friend(self_friend.id)
        transactions = self.store.transactions_by_id(
            s.transaction_id for s in chain(friend_splits, self_splits)
        )
        return friend_splits, self_splits, transactions

    def balance_with(self, user_id: UUID, friend_id: UUID) -> FriendBalance:
        """What user and friend owe each other, in the user's default currency."""
        user = self.require_user(user_id)
        friend = self.require_friend(user, friend_id)
        self_friend = self.store.get_self_friend(user.id)
        if self_friend is None:
            logger.warning("User %s has no self friend", user.id)
            return ledger.balance_with(user, friend, None, (), (), {})

        friend_splits, self_splits, transactions = self._pair_records(friend, self_friend)
        return ledger.balance_with(
            user, friend, self_friend, friend_splits, self_splits, transactions
        )

    def overall_balances(self, user_id: UUID) -> list[tuple[Friend, FriendBalance]]:
        """Balances with every friend, largest amount owed to the user first."""
        user = self.require_user(user_id)
        result = [
            (friend, self.balance_with(user.id, friend.id))
            for friend in self.store.list_friends(user.id)
            if not friend.is_self
        ]
        return sorted(result, key=lambda pair: pair[1].net_balance, reverse=True)

    # === Settlements ===

    def _record_settlement(
        self,
        user: User,
        friend: Friend,
        direction: SettlementDirection,
        amount: Decimal,
        currency: Currency,
        candidates: Sequence[ledger.Candidate],
        note: str | None,
        exchange_rates: ExchangeRates | None,
        now: datetime,
    ) -> SettlementResult:
        """Allocate, persist split progress and the Settlement. Caller holds the atomic block."""
        fallback = ledger.pick_settlement_rates(candidates, exchange_rates)
        allocation = ledger.allocate_fifo(
            amount, currency, candidates, fallback, settled_by_id=user.id, now=now
        )
        snapshot: RateTable = exchange_rates
        if snapshot is None:
            snapshot = ledger.allocated_rates(candidates, allocation, fallback)

        settlement_id = None
        if allocation.applied:
            for split in allocation.updated_splits:
                self.store.put_split(split)
            settlement = Settlement(
                created_by_id=user.id,
                friend_id=friend.id,
                amount=allocation.amount_applied,
                requested_amount=amount,
                currency=currency,
                direction=direction,
                note=note,
                balance_before_settlement=allocation.balance_before,
                exchange_rates=snapshot if isinstance(snapshot, ExchangeRates) else None,
                affected_splits=allocation.applied,
                settled_at=now,
                created_at=now,
            )
            self.store.insert_settlement(settlement)
            settlement_id = settlement.id

        if allocation.unapplied_amount > 0:
            logger.info(
                "Settlement of %s %s exceeds outstanding %s; %s left unapplied",
                amount,
                currency.value,
                allocation.balance_before,
                allocation.unapplied_amount,
            )

        return SettlementResult(
            settlement_id=settlement_id,
            currency=currency,
            requested_amount=amount,
            amount_applied=allocation.amount_applied,
            unapplied_amount=allocation.unapplied_amount,
            balance_before_settlement=allocation.balance_before,
            splits_touched=allocation.applied,
        )

    def _audit_settlement(
        self,
        user: User,
        friend_id: UUID,
        direction: SettlementDirection,
        result: SettlementResult,
    ) -> None:
        if result.settlement_id is None:
            return
        self._audit(
            "settlement_recorded",
            user.id,
            settlement_id=result.settlement_id,
            friend_id=friend_id,
            direction=direction.value,
            amount=str(result.amount_applied),
            requested=str(result.requested_amount),
            currency=result.currency.value,
        )

    def apply_settlement(
        self,
        user_id: UUID,
        friend_id: UUID,
        amount: Any,
        direction: "str | SettlementDirection",
        currency: "str | Currency | None" = None,
        note: str | None = None,
        exchange_rates: ExchangeRates | None = None,
    ) -> SettlementResult:
        """
        Pay down debts between user and friend, oldest transaction first.

        Any amount beyond what is outstanding is reported as unapplied, not
        recorded. Reading the outstanding splits, updating them and inserting
        the Settlement happen in one atomic block, so concurrent settlements
        with the same friend cannot allocate against the same remaining amounts.

        Args:
            user_id: User recording the payment
            friend_id: The other side
            amount: Payment amount, greater than zero
            direction: "to_friend" (user pays) or "from_friend" (friend pays user)
            currency: Payment currency (default: user's default currency)
            note: Optional memo
            exchange_rates: Rate snapshot to record (default: reused from a settled transaction)

        Returns:
            SettlementResult; settlement_id is None when nothing was outstanding

        Raises:
            InvalidInputError: Bad amount, direction or currency, or friend is self
            NotFoundError: Unknown user or friend
        """
        value = parse_amount(amount)
        way = SettlementDirection.parse(direction)
        ccy = Currency.parse(currency) if currency is not None else None

        with self.store.atomic():
            user = self.require_user(user_id)
            friend = self.require_friend(user, friend_id)
            self_friend = self.require_self_friend(user)
            if friend.is_self:
                raise InvalidInputError("Cannot settle with yourself")

            friend_splits, self_splits, transactions = self._pair_records(friend, self_friend)
            candidates = ledger.settlement_candidates(
                way, friend, self_friend, friend_splits, self_splits, transactions
            )
            result = self._record_settlement(
                user,
                friend,
                way,
                value,
                ccy or user.default_currency,
                candidates,
                note,
                exchange_rates,
                datetime.now(),
            )

        self._audit_settlement(user, friend.id, way, result)
        return result

    def settle_split(
        self,
        user_id: UUID,
        split_id: UUID,
        amount: Any = None,
        currency: "str | Currency | None" = None,
        note: str | None = None,
        exchange_rates: ExchangeRates | None = None,
    ) -> SettlementResult:
        """
        Settle one split, fully or partially.

        The direction follows from whose split it is: the user's own split is
        paid to the transaction's payer, a friend's split is paid to the user.
        amount defaults to everything still owed; currency to the transaction's.
        """
        value = parse_amount(amount) if amount is not None else None

        with self.store.atomic():
            user = self.require_user(user_id)
            split = self.store.get_split(split_id)
            if split is None:
                raise NotFoundError("Split", split_id)
            tx = self.require_transaction(user, split.transaction_id)
            owner = self.require_friend(user, split.friend_id)
            self_friend = self.require_self_friend(user)

            if not split.is_outstanding:
                raise InvalidInputError("Split already fully settled")

            if owner.is_self:
                way = SettlementDirection.TO_FRIEND
                counterparty = self.require_friend(user, tx.paid_by_id)
            elif tx.paid_by_id == self_friend.id:
                way = SettlementDirection.FROM_FRIEND
                counterparty = owner
            else:
                raise InvalidInputError("Split is not owed to or by you")

            ccy = Currency.parse(currency) if currency is not None else tx.currency
            table = tx.exchange_rates or exchange_rates
            if value is None:
                value = quantize(convert(split.remaining, tx.currency, ccy, table), ccy)

            result = self._record_settlement(
                user,
                counterparty,
                way,
                value,
                ccy,
                [ledger.Candidate(split, tx)],
                note,
                exchange_rates,
                datetime.now(),
            )

        self._audit_settlement(user, counterparty.id, way, result)
        return result

    def settle_all(self, user_id: UUID, friend_id: UUID) -> list[SettlementResult]:
        """Clear every outstanding split with friend, in both directions."""
        results: list[tuple[SettlementDirection, SettlementResult]] = []

        with self.store.atomic():
            user = self.require_user(user_id)
            friend = self.require_friend(user, friend_id)
            self_friend = self.require_self_friend(user)
            if friend.is_self:
                raise InvalidInputError("Cannot settle with yourself")

            currency = user.default_currency
            now = datetime.now()
            for way in SettlementDirection:
                friend_splits, self_splits, transactions = self._pair_records(friend, self_friend)
                candidates = ledger.settlement_candidates(
                    way, friend, self_friend, friend_splits, self_splits, transactions
                )
                if not candidates:
                    continue
                snapshot = ledger.pick_settlement_rates(candidates)
                outstanding = ledger.allocate_fifo(
                    Decimal("0"), currency, candidates, snapshot
                ).balance_before
                if outstanding <= 0:
                    continue
                result = self._record_settlement(
                    user, friend, way, outstanding, currency, candidates, None, None, now
                )
                results.append((way, result))

        for way, result in results:
            self._audit_settlement(user, friend.id, way, result)
        return [result for _, result in results]

    def settlement_history(self, user_id: UUID, friend_id: UUID) -> list[Settlement]:
        """Settlements the user recorded with friend, most recent first."""
        user = self.require_user(user_id)
        friend = self.require_friend(user, friend_id)
        return [
            s for s in self.store.settlements_for_friend(friend.id) if s.created_by_id == user.id
        ]

    # === Activity ===

    def activity_with_friend(self, user_id: UUID, friend_id: UUID) -> ActivityFeed:
        """Combined transaction and settlement history with friend, split at the last settle-up."""
        user = self.require_user(user_id)
        friend = self.require_friend(user, friend_id)
        self_friend = self.require_self_friend(user)

        transaction_ids = {s.transaction_id for s in self.store.splits_for_friend(friend.id)}
        transactions = [
            tx
            for tx in self.store.transactions_by_id(transaction_ids).values()
            if tx.created_by_id == user.id
        ]
        transactions.sort(key=lambda tx: tx.date, reverse=True)
        splits_by_transaction: Mapping[UUID, list[Split]] = {
            tx.id: self.store.splits_for_transaction(tx.id) for tx in transactions
        }

        items = ledger.merged_feed(
            friend,
            self_friend,
            transactions,
            splits_by_transaction,
            self.settlement_history(user.id, friend.id),
            user.default_currency,
        )
        return ledger.partition_feed(items)


def shares_from_amounts(
    amounts: Mapping[UUID, Any] | Iterable[tuple[UUID, Any]],
) -> list[ledger.Share]:
    """Build explicit shares for an unequal split."""
    pairs = amounts.items() if isinstance(amounts, Mapping) else amounts
    return [ledger.Share(friend_id, to_decimal(amount)) for friend_id, amount in pairs]
