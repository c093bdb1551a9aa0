"""Unit tests for the Plaid provider client."""

import json
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import plaid
import pytest
from urllib3.exceptions import MaxRetryError

from app.core.exceptions import ProviderRejected, ProviderUnavailable
from app.services.provider_client import (
    PlaidProviderClient,
    delta_page_from_plaid,
    map_api_exception,
)
from app.services.provider_protocol import ChangeKind


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_plaid_api():
    """Fixture that provides a mocked PlaidApi."""
    with patch("app.services.provider_client.plaid_api.PlaidApi") as MockCls:
        api_instance = MagicMock()
        MockCls.return_value = api_instance
        yield api_instance


@pytest.fixture
def client(mock_plaid_api):
    return PlaidProviderClient(client_id="test-client-id", secret="test-secret")


def _response(payload: dict) -> MagicMock:
    response = MagicMock()
    response.to_dict.return_value = payload
    return response


def _api_exception(status: int, body: dict | None = None) -> plaid.ApiException:
    exc = plaid.ApiException(status=status, reason="error")
    exc.body = json.dumps(body) if body is not None else None
    return exc


SAMPLE_SYNC_RESPONSE = {
    "added": [
        {
            "transaction_id": "T1",
            "account_id": "acc-1",
            "amount": 25.4,
            "iso_currency_code": "USD",
            "date": date(2024, 3, 2),
            "name": "Uber 063015 SF**POOL**",
            "merchant_name": "Uber",
            "pending": False,
            "payment_channel": "online",
            "personal_finance_category": {
                "primary": "TRANSPORTATION",
                "detailed": "TRANSPORTATION_TAXIS_AND_RIDE_SHARES",
                "confidence_level": "VERY_HIGH",
            },
            "location": {"city": None, "region": None},
        }
    ],
    "modified": [
        {
            "transaction_id": "T0",
            "account_id": "acc-1",
            "amount": -500,
            "date": "2024-02-28",
            "name": "Payroll",
            "pending": False,
        }
    ],
    "removed": [{"transaction_id": "T9"}],
    "next_cursor": "cursor-2",
    "has_more": True,
}


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def test_4xx_maps_to_rejected_with_plaid_error_code():
    error = map_api_exception(_api_exception(400, {
        "error_code": "ITEM_LOGIN_REQUIRED",
        "error_message": "the login details of this item have changed",
    }))

    assert isinstance(error, ProviderRejected)
    assert error.code == "ITEM_LOGIN_REQUIRED"
    assert error.retriable is False
    assert error.status_code == 400
    assert "login details" in error.message


def test_5xx_maps_to_unavailable():
    error = map_api_exception(_api_exception(502))

    assert isinstance(error, ProviderUnavailable)
    assert error.code == "HTTP_502"
    assert error.retriable is True


def test_rate_limit_maps_to_unavailable():
    error = map_api_exception(_api_exception(429, {"error_code": "RATE_LIMIT_EXCEEDED"}))

    assert isinstance(error, ProviderUnavailable)


def test_transient_plaid_code_with_4xx_maps_to_unavailable():
    error = map_api_exception(_api_exception(400, {"error_code": "PRODUCT_NOT_READY"}))

    assert isinstance(error, ProviderUnavailable)


def test_unparseable_body_still_maps():
    exc = plaid.ApiException(status=401, reason="Unauthorized")
    exc.body = "<html>nope</html>"

    error = map_api_exception(exc)

    assert isinstance(error, ProviderRejected)
    assert error.code == "HTTP_401"


# ---------------------------------------------------------------------------
# Response mapping
# ---------------------------------------------------------------------------


def test_delta_page_mapping_keeps_change_kinds():
    page = delta_page_from_plaid(SAMPLE_SYNC_RESPONSE)

    assert [c.kind for c in page.changes] == [ChangeKind.ADDED, ChangeKind.MODIFIED, ChangeKind.REMOVED]
    assert page.next_cursor == "cursor-2"
    assert page.has_more is True
    assert page.removed == ["T9"]

    added = page.added[0]
    assert added.amount == Decimal("25.4")
    assert added.category_primary == "TRANSPORTATION"
    assert added.category_confidence == "VERY_HIGH"
    assert added.payment_channel == "online"

    modified = page.modified[0]
    assert modified.amount == Decimal("-500")
    assert modified.transaction_date == date(2024, 2, 28)


# ---------------------------------------------------------------------------
# Client calls
# ---------------------------------------------------------------------------


async def test_fetch_delta_page_without_cursor_starts_backfill(client, mock_plaid_api):
    mock_plaid_api.transactions_sync.return_value = _response(SAMPLE_SYNC_RESPONSE)

    page = await client.fetch_delta_page("access-token")

    request = mock_plaid_api.transactions_sync.call_args.args[0]
    assert request.access_token == "access-token"
    assert "cursor" not in request.to_dict()
    assert len(page.changes) == 3


async def test_fetch_delta_page_passes_cursor(client, mock_plaid_api):
    mock_plaid_api.transactions_sync.return_value = _response(
        {"added": [], "modified": [], "removed": [], "next_cursor": "cursor-3", "has_more": False}
    )

    page = await client.fetch_delta_page("access-token", "cursor-2")

    request = mock_plaid_api.transactions_sync.call_args.args[0]
    assert request.cursor == "cursor-2"
    assert page.is_empty
    assert page.next_cursor == "cursor-3"


async def test_fetch_accounts_maps_balances(client, mock_plaid_api):
    mock_plaid_api.accounts_get.return_value = _response({
        "accounts": [
            {
                "account_id": "acc-1",
                "name": "Plaid Checking",
                "official_name": "Plaid Gold Standard 0% Interest Checking",
                "type": "depository",
                "subtype": "checking",
                "mask": "0000",
                "balances": {"available": 100, "current": 110, "limit": None, "iso_currency_code": "USD"},
            }
        ]
    })

    accounts = await client.fetch_accounts("access-token")

    assert len(accounts) == 1
    assert accounts[0].balance_current == Decimal("110")
    assert accounts[0].balance_limit is None
    assert accounts[0].iso_currency_code == "USD"


async def test_api_exception_is_raised_as_provider_error(client, mock_plaid_api):
    mock_plaid_api.accounts_get.side_effect = _api_exception(400, {"error_code": "INVALID_ACCESS_TOKEN"})

    with pytest.raises(ProviderRejected) as excinfo:
        await client.fetch_accounts("bad-token")

    assert excinfo.value.code == "INVALID_ACCESS_TOKEN"
    assert mock_plaid_api.accounts_get.call_count == 1


async def test_network_failure_is_unavailable(client, mock_plaid_api):
    mock_plaid_api.transactions_sync.side_effect = MaxRetryError(None, "/transactions/sync")

    with pytest.raises(ProviderUnavailable) as excinfo:
        await client.fetch_delta_page("access-token", "cursor-1")

    assert excinfo.value.code == "NETWORK_ERROR"


async def test_exchange_public_token_returns_credential_and_item(client, mock_plaid_api):
    mock_plaid_api.item_public_token_exchange.return_value = _response(
        {"access_token": "access-sandbox-123", "item_id": "item-abc"}
    )

    assert await client.exchange_public_token("public-sandbox-1") == ("access-sandbox-123", "item-abc")


async def test_missing_credentials_raise_value_error():
    client = PlaidProviderClient(client_id="", secret="")
    client._client_id = None
    client._secret = None

    with pytest.raises(ValueError):
        await client.fetch_accounts("access-token")
