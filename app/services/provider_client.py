"""Plaid adapter: account snapshots, transaction delta pages and the Link flow."""

import asyncio
import hashlib
import json
import logging
import os
from datetime import date
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, TypeVar

import plaid
from dotenv import load_dotenv
from plaid.api import plaid_api
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from urllib3.exceptions import HTTPError as TransportError

from app.core.exceptions import ProviderError, ProviderRejected, ProviderUnavailable
from app.services.provider_protocol import (
    AccountSnapshot,
    DeltaPage,
    TransactionChange,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

load_dotenv()

# Plaid configuration
PLAID_CLIENT_ID = os.getenv("PLAID_CLIENT_ID")
PLAID_SECRET = os.getenv("PLAID_SECRET")
PLAID_ENV = os.getenv("PLAID_ENV", "sandbox")
PLAID_CLIENT_NAME = os.getenv("PLAID_CLIENT_NAME", "Ledger Sync")
PLAID_REQUEST_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))

# Environment mapping - Plaid API host URLs
PLAID_ENV_MAP = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# Plaid error codes that arrive with a 4xx status but clear up on their own
_TRANSIENT_ERROR_CODES = {
    "INSTITUTION_DOWN",
    "INSTITUTION_NOT_RESPONDING",
    "INTERNAL_SERVER_ERROR",
    "PRODUCT_NOT_READY",
    "RATE_LIMIT_EXCEEDED",
    "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION",
}

T = TypeVar("T")


def _hash_user_id(user_id: str) -> str:
    """Hash user_id to avoid sending PII (like email) to Plaid."""
    return hashlib.sha256(user_id.encode()).hexdigest()[:32]


def map_api_exception(exc: plaid.ApiException) -> ProviderError:
    """Translate a Plaid ApiException into a typed provider error."""
    status_code = exc.status or None
    error_code = ""
    message = exc.reason or str(exc)

    try:
        body = json.loads(exc.body) if exc.body else {}
    except (TypeError, ValueError):
        body = {}
    if isinstance(body, dict):
        error_code = body.get("error_code") or ""
        message = body.get("error_message") or message

    code = error_code or (f"HTTP_{status_code}" if status_code else "UNKNOWN")

    if status_code is None or status_code >= 500 or status_code == 429:
        return ProviderUnavailable(code, message, status_code)
    if error_code in _TRANSIENT_ERROR_CODES:
        return ProviderUnavailable(code, message, status_code)
    return ProviderRejected(code, message, status_code)


def _as_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _as_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _as_str(value: Any) -> str | None:
    """Plaid enums come back as wrapper objects or plain strings."""
    if value is None:
        return None
    return str(getattr(value, "value", value))


def account_from_plaid(data: dict[str, Any]) -> AccountSnapshot:
    """Map an /accounts/get account dict to an AccountSnapshot."""
    balances = data.get("balances") or {}
    return AccountSnapshot(
        account_id=data["account_id"],
        name=data.get("name") or "",
        official_name=data.get("official_name"),
        type=_as_str(data.get("type")) or "other",
        subtype=_as_str(data.get("subtype")),
        mask=data.get("mask"),
        balance_available=_as_decimal(balances.get("available")),
        balance_current=_as_decimal(balances.get("current")),
        balance_limit=_as_decimal(balances.get("limit")),
        iso_currency_code=balances.get("iso_currency_code"),
        unofficial_currency_code=balances.get("unofficial_currency_code"),
    )


def transaction_from_plaid(data: dict[str, Any]) -> TransactionRecord:
    """Map a /transactions/sync transaction dict to a TransactionRecord."""
    pfc = data.get("personal_finance_category") or {}
    return TransactionRecord(
        transaction_id=data["transaction_id"],
        account_id=data["account_id"],
        amount=_as_decimal(data.get("amount")) or Decimal("0"),
        iso_currency_code=data.get("iso_currency_code"),
        unofficial_currency_code=data.get("unofficial_currency_code"),
        transaction_date=_as_date(data.get("date")),
        authorized_date=_as_date(data.get("authorized_date")),
        name=data.get("name") or data.get("merchant_name") or "",
        merchant_name=data.get("merchant_name"),
        merchant_entity_id=data.get("merchant_entity_id"),
        original_description=data.get("original_description"),
        pending=bool(data.get("pending", False)),
        category_primary=pfc.get("primary"),
        category_detailed=pfc.get("detailed"),
        category_confidence=pfc.get("confidence_level"),
        legacy_category=data.get("category"),
        category_id=data.get("category_id"),
        payment_channel=_as_str(data.get("payment_channel")),
        transaction_type=_as_str(data.get("transaction_type")),
        location=data.get("location") or None,
        payment_meta=data.get("payment_meta") or None,
        logo_url=data.get("logo_url"),
        website=data.get("website"),
    )


def delta_page_from_plaid(data: dict[str, Any]) -> DeltaPage:
    """Map a /transactions/sync response dict to a DeltaPage."""
    changes = [
        TransactionChange.added(transaction_from_plaid(t))
        for t in data.get("added") or []
    ]
    changes.extend(
        TransactionChange.modified(transaction_from_plaid(t))
        for t in data.get("modified") or []
    )
    changes.extend(
        TransactionChange.removed(r["transaction_id"])
        for r in data.get("removed") or []
    )
    return DeltaPage(
        next_cursor=data["next_cursor"],
        has_more=bool(data.get("has_more", False)),
        changes=changes,
    )


def _to_dict(response: Any) -> dict[str, Any]:
    return response.to_dict() if hasattr(response, "to_dict") else dict(response)


class PlaidProviderClient:
    """
    Stateless Plaid client implementing the ProviderClient protocol.

    The SDK is blocking, so every call runs in a worker thread. Errors are
    raised as ProviderUnavailable or ProviderRejected and never retried here.
    """

    def __init__(
        self,
        client_id: str | None = None,
        secret: str | None = None,
        environment: str | None = None,
        request_timeout: float = PLAID_REQUEST_TIMEOUT,
    ):
        self._client_id = client_id or PLAID_CLIENT_ID
        self._secret = secret or PLAID_SECRET
        self._environment = (environment or PLAID_ENV).lower()
        self._request_timeout = request_timeout
        self._api: plaid_api.PlaidApi | None = None

    def _get_api(self) -> plaid_api.PlaidApi:
        """Create (once) and return the Plaid API client."""
        if self._api is None:
            if not self._client_id or not self._secret:
                raise ValueError(
                    "PLAID_CLIENT_ID and PLAID_SECRET environment variables are required"
                )
            host = PLAID_ENV_MAP.get(self._environment)
            if host is None:
                logger.warning(
                    f"Unknown PLAID_ENV={self._environment!r}, falling back to sandbox"
                )
                host = PLAID_ENV_MAP["sandbox"]

            configuration = plaid.Configuration(
                host=host,
                api_key={
                    "clientId": self._client_id,
                    "secret": self._secret,
                },
            )
            self._api = plaid_api.PlaidApi(plaid.ApiClient(configuration))
            logger.info(f"Plaid client initialized for {self._environment}")
        return self._api

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking SDK call in a thread and normalize its failures."""
        try:
            return await asyncio.to_thread(
                fn, *args, _request_timeout=self._request_timeout
            )
        except plaid.ApiException as e:
            error = map_api_exception(e)
            logger.warning(f"Plaid {operation} failed: {error}")
            raise error from e
        except (TransportError, OSError) as e:
            logger.warning(f"Plaid {operation} transport failure: {e}")
            raise ProviderUnavailable("NETWORK_ERROR", str(e)) from e

    async def fetch_accounts(self, credential: str) -> list[AccountSnapshot]:
        """Fetch every account (with balances) for one connection."""
        api = self._get_api()
        response = await self._call(
            "accounts_get",
            api.accounts_get,
            AccountsGetRequest(access_token=credential),
        )
        accounts = [account_from_plaid(a) for a in _to_dict(response)["accounts"]]
        logger.debug(f"Fetched {len(accounts)} accounts")
        return accounts

    async def fetch_delta_page(
        self, credential: str, cursor: str | None = None
    ) -> DeltaPage:
        """Fetch one /transactions/sync page; no cursor starts a full backfill."""
        api = self._get_api()
        if cursor:
            request = TransactionsSyncRequest(access_token=credential, cursor=cursor)
        else:
            request = TransactionsSyncRequest(access_token=credential)

        response = await self._call("transactions_sync", api.transactions_sync, request)
        page = delta_page_from_plaid(_to_dict(response))
        logger.debug(
            f"Fetched delta page: {len(page.added)} added, {len(page.modified)} modified, "
            f"{len(page.removed)} removed, has_more={page.has_more}"
        )
        return page

    async def create_link_token(self, user_id: str) -> str:
        """
        Create a Plaid Link token for initializing Link in the frontend.

        Args:
            user_id: The user's unique identifier (hashed before it is sent)

        Returns:
            The link_token string for Plaid Link initialization
        """
        api = self._get_api()
        request = LinkTokenCreateRequest(
            products=[Products("transactions")],
            client_name=PLAID_CLIENT_NAME,
            country_codes=[CountryCode("US")],
            language="en",
            user=LinkTokenCreateRequestUser(client_user_id=_hash_user_id(user_id)),
        )
        response = await self._call("link_token_create", api.link_token_create, request)
        return _to_dict(response)["link_token"]

    async def exchange_public_token(self, public_token: str) -> tuple[str, str]:
        """
        Exchange a Link public token for a long-lived access token.

        Returns:
            (access_token, item_id)
        """
        api = self._get_api()
        response = await self._call(
            "item_public_token_exchange",
            api.item_public_token_exchange,
            ItemPublicTokenExchangeRequest(public_token=public_token),
        )
        data = _to_dict(response)
        return data["access_token"], data["item_id"]


@lru_cache
def get_provider_client() -> PlaidProviderClient:
    """Process-wide Plaid client."""
    return PlaidProviderClient()
