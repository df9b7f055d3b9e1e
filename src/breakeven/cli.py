"""Click CLI entrypoint for Break Even."""

import logging
import sys
from datetime import datetime
from typing import NoReturn

import click

from . import __version__, templates
from .fx import RateProvider
from .models import Currency, LedgerError, SettlementDirection, SplitMethod, User
from .service import LedgerService, parse_amount, shares_from_amounts
from .state import LedgerStore

CURRENCY_CHOICE = click.Choice([c.value for c in Currency], case_sensitive=False)


def _service(state_dir: str | None) -> LedgerService:
    store = LedgerStore(state_dir)
    return LedgerService(store, rates=RateProvider(store=store))


def _user(service: LedgerService, email: str) -> User:
    user = service.store.find_user_by_email(email)
    if user is None:
        _fail(f"User '{email}' not found.")
    return user


def _fail(message: str) -> NoReturn:
    click.echo(f"❌ {message}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Break Even - Split bills with friends and settle up over time."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("add-user")
@click.argument("name")
@click.argument("email")
@click.option("--currency", type=CURRENCY_CHOICE, default="USD", help="Default display currency")
@click.option("--phone", default=None)
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def add_user(
    name: str, email: str, currency: str, phone: str | None, state_dir: str | None
) -> None:
    """Register a user (or update an existing one with the same EMAIL)."""
    service = _service(state_dir)
    try:
        user = service.get_or_create_user(name, email, phone=phone, default_currency=currency)
    except LedgerError as e:
        _fail(str(e))
    click.echo(f"✅ {user.name} <{user.email}> ({user.default_currency.value})")


@cli.command("add-friend")
@click.argument("user_email")
@click.argument("name")
@click.option("--email", default=None, help="Links the friend if this email is registered")
@click.option("--phone", default=None)
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def add_friend(
    user_email: str, name: str, email: str | None, phone: str | None, state_dir: str | None
) -> None:
    """Add a friend for the user with USER_EMAIL."""
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        friend = service.add_friend(user.id, name, email=email, phone=phone)
    except LedgerError as e:
        _fail(str(e))
    kind = "placeholder" if friend.is_dummy else "linked"
    click.echo(f"✅ Added {friend.name} ({kind})")


@cli.command()
@click.argument("user_email")
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def friends(user_email: str, state_dir: str | None) -> None:
    """List a user's friends."""
    service = _service(state_dir)
    user = _user(service, user_email)
    found = [f for f in service.store.list_friends(user.id) if not f.is_self]

    if not found:
        click.echo("No friends yet.")
        return

    click.echo("Friends:")
    for friend in found:
        suffix = "" if friend.is_dummy else " (linked)"
        click.echo(f"  • {friend.name}{suffix}")


@cli.command("add-expense")
@click.argument("user_email")
@click.argument("title")
@click.argument("amount")
@click.option("--currency", type=CURRENCY_CHOICE, default=None, help="Default: user's currency")
@click.option("--paid-by", default="me", help="Friend name who paid (default: me)")
@click.option("--with", "with_", multiple=True, help="Friend to split equally with (repeatable)")
@click.option(
    "--split",
    "custom",
    multiple=True,
    help="NAME=AMOUNT for an unequal split (repeatable, use 'me' for yourself)",
)
@click.option("--date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--emoji", default="📝")
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def add_expense(
    user_email: str,
    title: str,
    amount: str,
    currency: str | None,
    paid_by: str,
    with_: tuple[str, ...],
    custom: tuple[str, ...],
    date: datetime | None,
    emoji: str,
    state_dir: str | None,
) -> None:
    """
    Record an expense.

    Without --split the AMOUNT is divided equally between you and every --with friend.
    """
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        payer = service.resolve_friend(user, paid_by)
        if custom:
            amounts = {}
            for entry in custom:
                name, sep, value = entry.partition("=")
                if not sep:
                    _fail(f"Invalid --split '{entry}', expected NAME=AMOUNT")
                amounts[service.resolve_friend(user, name).id] = parse_amount(value)
            tx = service.create_transaction(
                user.id,
                payer.id,
                title,
                amount,
                currency or user.default_currency,
                splits=shares_from_amounts(amounts),
                split_method=SplitMethod.UNEQUAL,
                emoji=emoji,
                date=date,
            )
        else:
            participants = [service.require_self_friend(user).id]
            participants += [service.resolve_friend(user, name).id for name in with_]
            tx = service.create_transaction(
                user.id,
                payer.id,
                title,
                amount,
                currency or user.default_currency,
                participants=participants,
                emoji=emoji,
                date=date,
            )
    except LedgerError as e:
        _fail(str(e))

    total = templates.format_currency(tx.total_amount, tx.currency)
    click.echo(f"✅ {tx.emoji} {tx.title} {total}")


@cli.command()
@click.argument("user_email")
@click.argument("friend", required=False)
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def balances(user_email: str, friend: str | None, state_dir: str | None) -> None:
    """Show balances with one FRIEND, or with everyone."""
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        if friend:
            other = service.resolve_friend(user, friend)
            click.echo(templates.format_balance(other, service.balance_with(user.id, other.id)))
        else:
            click.echo(templates.format_balances_list(service.overall_balances(user.id)))
    except LedgerError as e:
        _fail(str(e))


@cli.command()
@click.argument("user_email")
@click.argument("friend")
@click.argument("amount")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in SettlementDirection]),
    required=True,
    help="to_friend: you pay them; from_friend: they pay you",
)
@click.option("--currency", type=CURRENCY_CHOICE, default=None, help="Default: user's currency")
@click.option("--note", default=None)
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def settle(
    user_email: str,
    friend: str,
    amount: str,
    direction: str,
    currency: str | None,
    note: str | None,
    state_dir: str | None,
) -> None:
    """Record a payment of AMOUNT with FRIEND, applied to the oldest debts first."""
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        other = service.resolve_friend(user, friend)
        result = service.apply_settlement(
            user.id, other.id, amount, direction, currency=currency, note=note
        )
    except LedgerError as e:
        _fail(str(e))
    click.echo(templates.format_settlement_result(other, result))


@cli.command()
@click.argument("user_email")
@click.argument("friend")
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def activity(user_email: str, friend: str, state_dir: str | None) -> None:
    """Show transactions and settlements with FRIEND, newest first."""
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        other = service.resolve_friend(user, friend)
        feed = service.activity_with_friend(user.id, other.id)
    except LedgerError as e:
        _fail(str(e))
    click.echo(templates.format_feed(feed))


@cli.command()
@click.argument("user_email")
@click.argument("transaction_id", required=False)
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def transactions(user_email: str, transaction_id: str | None, state_dir: str | None) -> None:
    """List recorded expenses, or show one by TRANSACTION_ID (a prefix is enough)."""
    service = _service(state_dir)
    user = _user(service, user_email)
    details = service.list_transactions(user.id)

    if not transaction_id:
        click.echo(templates.format_transactions(details))
        return

    matches = [d for d in details if str(d.transaction.id).startswith(transaction_id.lower())]
    if not matches:
        _fail(f"Transaction not found: {transaction_id}")
    if len(matches) > 1:
        _fail(f"Transaction id '{transaction_id}' is ambiguous")
    click.echo(templates.format_transaction_detail(matches[0]))


@cli.command()
@click.argument("user_email")
@click.argument("friend")
@click.option("--email", default=None, help="Recipient email (default: the friend's)")
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def invite(user_email: str, friend: str, email: str | None, state_dir: str | None) -> None:
    """Invite the person behind placeholder FRIEND to join and link up."""
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        other = service.resolve_friend(user, friend)
        invitation, created = service.create_invitation(user.id, other.id, recipient_email=email)
    except LedgerError as e:
        _fail(str(e))
    click.echo(templates.format_invitation(other, invitation, created=created))


@cli.command("accept-invite")
@click.argument("user_email")
@click.argument("token")
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def accept_invite(user_email: str, token: str, state_dir: str | None) -> None:
    """Accept an invitation TOKEN as the user with USER_EMAIL."""
    service = _service(state_dir)
    user = _user(service, user_email)
    try:
        service.accept_invitation(user.id, token)
        invitation = service.get_invitation(token)
        assert invitation is not None
        sender = service.require_user(invitation.sender_id)
    except LedgerError as e:
        _fail(str(e))
    click.echo(templates.INVITATION_ACCEPTED.format(name=sender.name))


@cli.command()
@click.argument("user_email")
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def invitations(user_email: str, state_dir: str | None) -> None:
    """List invitations the user has sent."""
    service = _service(state_dir)
    user = _user(service, user_email)
    sent = []
    for invitation in service.list_sent_invitations(user.id):
        friend = service.store.get_friend(invitation.friend_id)
        sent.append((invitation, friend.name if friend else "Unknown"))
    click.echo(templates.format_invitations(sent))


@cli.command()
@click.option("--state-dir", default=None, help="State directory (default: ~/.breakeven)")
def rates(state_dir: str | None) -> None:
    """Show the exchange rates new expenses will use."""
    service = _service(state_dir)
    assert service.rates is not None
    table = service.rates.get_or_fetch_rates()
    click.echo(f"Rates per 1 {table.base_currency} (as of {table.fetched_at:%Y-%m-%d %H:%M}):")
    for code, rate in table.rates.items():
        click.echo(f"  {code}: {rate}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
