"""Response message templates - all user-facing text lives here.

Amounts are rounded to each currency's minor units for display only;
stored values are never rounded here.
"""

from decimal import Decimal

from .fx import quantize
from .models import (
    ActivityFeed,
    Currency,
    FeedItem,
    FeedItemType,
    Friend,
    FriendBalance,
    Invitation,
    InvitationStatus,
    SettlementResult,
    TransactionDetail,
)


def format_currency(amount: Decimal, currency: "str | Currency") -> str:
    """Format amount with currency symbol and the currency's decimal places."""
    ccy = Currency.parse(currency)
    value = quantize(amount, ccy)
    sign = "-" if value < 0 else ""
    return f"{sign}{ccy.symbol}{abs(value):,}"


# === BALANCE TEMPLATES ===

FRIEND_OWES_YOU = "💰 {name} owes you {amount}"

YOU_OWE_FRIEND = "💸 You owe {name} {amount}"

SETTLED_UP = "✨ You and {name} are settled up"

RATES_INCOMPLETE = "⚠️ Some amounts could not be converted and are shown unconverted"

BREAKDOWN_LINE = "   • {currency}: they owe {friend_owes}, you owe {user_owes}"


def format_balance(friend: Friend, balance: FriendBalance) -> str:
    """One friend's balance, plus a per-currency breakdown for mixed currencies."""
    if balance.is_settled_up:
        return SETTLED_UP.format(name=friend.name)

    amount = format_currency(abs(balance.net_balance), balance.currency)
    if balance.net_balance >= 0:
        lines = [FRIEND_OWES_YOU.format(name=friend.name, amount=amount)]
    else:
        lines = [YOU_OWE_FRIEND.format(name=friend.name, amount=amount)]

    if len(balance.by_currency) > 1 or (
        balance.by_currency and balance.currency.value not in balance.by_currency
    ):
        for code, entry in sorted(balance.by_currency.items()):
            lines.append(
                BREAKDOWN_LINE.format(
                    currency=code,
                    friend_owes=format_currency(entry.friend_owes, code),
                    user_owes=format_currency(entry.user_owes, code),
                )
            )

    if not balance.rates_complete:
        lines.append(RATES_INCOMPLETE)
    return "\n".join(lines)


def format_balances_list(balances: list[tuple[Friend, FriendBalance]]) -> str:
    """All friends' balances, skipping those who are settled up."""
    lines = [
        format_balance(friend, balance)
        for friend, balance in balances
        if not balance.is_settled_up
    ]
    if not lines:
        return ALL_SETTLED
    return "\n".join(lines)


# === SETTLEMENT TEMPLATES ===

SETTLEMENT_RECORDED = "✅ Settled {applied} of {balance_before} with {name}"

SETTLEMENT_UNAPPLIED = (
    "⚠️ Only {applied} was outstanding; {unapplied} was not applied to anything"
)

NOTHING_TO_SETTLE = "🤷 Nothing outstanding with {name} in that direction."


def format_settlement_result(friend: Friend, result: SettlementResult) -> str:
    """Summary of a settlement, warning when part of the payment could not be applied."""
    if result.settlement_id is None:
        return NOTHING_TO_SETTLE.format(name=friend.name)

    lines = [
        SETTLEMENT_RECORDED.format(
            applied=format_currency(result.amount_applied, result.currency),
            balance_before=format_currency(result.balance_before_settlement, result.currency),
            name=friend.name,
        )
    ]
    if result.unapplied_amount > 0:
        lines.append(
            SETTLEMENT_UNAPPLIED.format(
                applied=format_currency(result.amount_applied, result.currency),
                unapplied=format_currency(result.unapplied_amount, result.currency),
            )
        )
    return "\n".join(lines)


# === ACTIVITY TEMPLATES ===

FEED_TRANSACTION = "{date}  {title}  {who} {amount}{status}"

FEED_SETTLEMENT = "{date}  🤝 {title}  {who}{amount}{out_of}"

FEED_OLDER_HEADER = "── Settled up ──"

NO_ACTIVITY = "No activity yet."


def format_feed_item(item: FeedItem) -> str:
    date = item.timestamp.strftime("%Y-%m-%d")
    if item.converted_amount is not None and item.display_currency is not None:
        amount = format_currency(item.converted_amount, item.display_currency)
    else:
        amount = format_currency(item.amount, item.currency)

    if item.item_type == FeedItemType.SETTLEMENT:
        out_of = ""
        if item.converted_balance_before is not None and item.display_currency is not None:
            out_of = f" of {format_currency(item.converted_balance_before, item.display_currency)}"
        if item.paid_by_user is None:
            who = ""
        else:
            who = "you paid " if item.paid_by_user else "they paid "
        return FEED_SETTLEMENT.format(
            date=date, title=item.title, who=who, amount=amount, out_of=out_of
        )

    if item.is_owed is None:
        who = "shared"
    else:
        who = "they owe" if item.is_owed else "you owe"
    status = " ✓" if item.is_settled else ""
    return FEED_TRANSACTION.format(
        date=date, title=item.title, who=who, amount=amount, status=status
    )


def format_feed(feed: ActivityFeed) -> str:
    """Recent items, then a divider, then history."""
    if not feed.items:
        return NO_ACTIVITY
    lines = [format_feed_item(item) for item in feed.recent]
    if feed.older:
        lines.append(FEED_OLDER_HEADER)
        lines.extend(format_feed_item(item) for item in feed.older)
    return "\n".join(lines)


# === TRANSACTION TEMPLATES ===

TRANSACTION_LINE = "{date}  {emoji} {title}  {amount}  paid by {payer}  [{status}]  {short_id}"

TRANSACTION_SPLIT_LINE = "   • {name}: {amount}{progress}"

NO_TRANSACTIONS = "No expenses yet."

STATUS_LABELS = {"pending": "pending", "partial": "partly settled", "settled": "settled ✓"}


def format_transaction_line(detail: TransactionDetail) -> str:
    tx = detail.transaction
    return TRANSACTION_LINE.format(
        date=tx.date.strftime("%Y-%m-%d"),
        emoji=tx.emoji,
        title=tx.title,
        amount=format_currency(tx.total_amount, tx.currency),
        payer=detail.payer_name,
        status=STATUS_LABELS.get(detail.status, detail.status),
        short_id=str(tx.id)[:8],
    )


def format_transactions(details: list[TransactionDetail]) -> str:
    if not details:
        return NO_TRANSACTIONS
    return "\n".join(format_transaction_line(detail) for detail in details)


def format_transaction_detail(detail: TransactionDetail) -> str:
    """Header line, then each split with how much of it has been settled."""
    tx = detail.transaction
    lines = [format_transaction_line(detail)]
    if tx.description:
        lines.append(f"   {tx.description}")
    for entry in detail.splits:
        split = entry.split
        if not split.is_outstanding:
            progress = " ✓"
        elif split.progress > 0:
            progress = f" ({format_currency(split.progress, tx.currency)} settled)"
        else:
            progress = ""
        lines.append(
            TRANSACTION_SPLIT_LINE.format(
                name=entry.friend_name,
                amount=format_currency(split.amount, tx.currency),
                progress=progress,
            )
        )
    return "\n".join(lines)


# === INVITATION TEMPLATES ===

INVITATION_CREATED = "📨 Invitation for {name}: {token} (expires {expires})"

INVITATION_EXISTING = "📨 {name} already has a pending invitation: {token} (expires {expires})"

INVITATION_LINE = "{token}  {name}  {status}{expired}"

INVITATION_ACCEPTED = "🤝 You are now linked with {name}"

NO_INVITATIONS = "No invitations sent."


def format_invitation(friend: Friend, invitation: Invitation, created: bool = True) -> str:
    template = INVITATION_CREATED if created else INVITATION_EXISTING
    return template.format(
        name=friend.name,
        token=invitation.token,
        expires=invitation.expires_at.strftime("%Y-%m-%d"),
    )


def format_invitations(invitations: list[tuple[Invitation, str]]) -> str:
    """Sent invitations with the name of the friend each one is for."""
    if not invitations:
        return NO_INVITATIONS
    lines = []
    for invitation, name in invitations:
        expired = (
            " (expired)"
            if invitation.status == InvitationStatus.PENDING and invitation.is_expired()
            else ""
        )
        lines.append(
            INVITATION_LINE.format(
                token=invitation.token, name=name, status=invitation.status.value, expired=expired
            )
        )
    return "\n".join(lines)


# === NOTHING TO DO ===

ALL_SETTLED = "✨ All settled up! No outstanding balances."
