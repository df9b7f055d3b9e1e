"""Shared test fixtures for Break Even tests."""

from collections.abc import Callable, Generator
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch
from uuid import UUID

import pytest

from breakeven.models import ExchangeRates, Friend, Transaction, User
from breakeven.service import LedgerService, shares_from_amounts
from breakeven.state import LedgerStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep audit logs and state out of the home directory, and never hit the rate API."""
    monkeypatch.setenv("BREAKEVEN_AUDIT_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setenv("BREAKEVEN_STATE_DIR", str(tmp_path / "default-state"))
    monkeypatch.delenv("EXCHANGERATE_API_KEY", raising=False)


@pytest.fixture
def sample_rates() -> ExchangeRates:
    """A USD-based rate table."""
    return ExchangeRates(
        base_currency="USD",
        rates={
            "USD": Decimal("1"),
            "EUR": Decimal("0.92"),
            "GBP": Decimal("0.79"),
            "JPY": Decimal("149.50"),
        },
        fetched_at=datetime(2024, 1, 1, 12, 0),
    )


@pytest.fixture
def store(tmp_path: Path) -> LedgerStore:
    """Create a LedgerStore with a temporary state directory."""
    return LedgerStore(tmp_path / "state")


@pytest.fixture
def service(store: LedgerStore) -> LedgerService:
    """A service without a rate provider; tests pass rate snapshots explicitly."""
    return LedgerService(store)


@pytest.fixture
def alice(service: LedgerService) -> User:
    return service.get_or_create_user("Alice", "alice@example.com")


@pytest.fixture
def me(service: LedgerService, alice: User) -> Friend:
    """Alice's self friend."""
    return service.require_self_friend(alice)


@pytest.fixture
def bob(service: LedgerService, alice: User) -> Friend:
    return service.add_friend(alice.id, "Bob")


@pytest.fixture
def carol(service: LedgerService, alice: User) -> Friend:
    return service.add_friend(alice.id, "Carol")


@pytest.fixture
def add_expense(
    service: LedgerService, alice: User
) -> Callable[..., Transaction]:
    """Factory recording an expense for Alice with explicit per-friend amounts."""

    def _add(
        paid_by: Friend,
        amounts: dict[UUID, str],
        currency: str = "USD",
        date: datetime | None = None,
        title: str = "Expense",
        exchange_rates: ExchangeRates | None = None,
    ) -> Transaction:
        total = sum((Decimal(a) for a in amounts.values()), Decimal("0"))
        return service.create_transaction(
            alice.id,
            paid_by.id,
            title,
            total,
            currency,
            splits=shares_from_amounts(amounts),
            split_method="unequal",
            date=date,
            exchange_rates=exchange_rates,
        )

    return _add


@pytest.fixture
def mock_rates_api() -> Generator[MagicMock, None, None]:
    """Mock ExchangeRate-API calls to avoid network access."""
    with patch("breakeven.fx.requests.get") as mock_get:
        mock_response = MagicMock()
        mock_response.json.return_value = {
            "result": "success",
            "base_code": "USD",
            "conversion_rates": {"USD": 1, "EUR": 0.9, "GBP": 0.8, "CHF": 0.88},
        }
        mock_response.raise_for_status = MagicMock()
        mock_get.return_value = mock_response
        yield mock_get
