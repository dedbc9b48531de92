from __future__ import annotations

import json
import os
from typing import Any, Literal, Self, TypedDict, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field, ValidationError

from txnsync.models.transaction import (
    ChangesPage,
    PersonalFinanceCategory,
    ProviderAccount,
    RemovedTransaction,
    Transaction,
)

PlaidEnv = Literal["sandbox", "development", "production"]


class PlaidClientError(Exception):
    """Base error for Plaid client failures.

    ``error_code``/``error_type`` are populated from Plaid's JSON error body
    when the API returned one; network failures leave them as None.
    """

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        error_type: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.error_type = error_type
        self.status = status


PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


class PlaidItemInfo(TypedDict):
    item_id: str
    institution_id: str | None
    institution_name: str | None


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise PlaidClientError(
                f"Unexpected Plaid response shape for {cls.__name__}: {e}"
            ) from e


class PlaidErrorResponse(PlaidBaseModel):
    error_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    request_id: str | None = None


class AccountBalancesModel(PlaidBaseModel):
    available: float | None = None
    current: float | None = None
    limit: float | None = None


class AccountsGetAccount(PlaidBaseModel):
    account_id: str
    name: str | None = None
    mask: str | None = None
    subtype: str | None = None
    type: str | None = None
    balances: AccountBalancesModel = Field(default_factory=AccountBalancesModel)

    def to_typed(self) -> ProviderAccount:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "mask": self.mask,
            "type": self.type,
            "subtype": self.subtype,
            "balances": self.balances.model_dump(),
        }


class AccountsGetResponse(PlaidBaseModel):
    accounts: list[AccountsGetAccount]


class ItemModel(PlaidBaseModel):
    item_id: str
    institution_id: str | None = None


class ItemGetResponse(PlaidBaseModel):
    item: ItemModel


class InstitutionModel(PlaidBaseModel):
    name: str | None = None


class InstitutionGetByIdResponse(PlaidBaseModel):
    institution: InstitutionModel | None = None


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None = None
    date: str
    name: str = ""
    merchant_name: str | None = None
    pending: bool = False
    category: list[str] | None = None
    personal_finance_category: dict[str, Any] | None = None

    def to_typed(self) -> Transaction:
        txn: Transaction = {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "amount": self.amount,
            "iso_currency_code": self.iso_currency_code,
            "date": self.date,
            "name": self.name,
            "merchant_name": self.merchant_name,
            "pending": self.pending,
            "category": self.category,
            "personal_finance_category": cast(
                PersonalFinanceCategory | None, self.personal_finance_category
            ),
        }
        return txn


class RemovedTransactionModel(PlaidBaseModel):
    transaction_id: str

    def to_typed(self) -> RemovedTransaction:
        return {"transaction_id": self.transaction_id}


class TransactionsSyncResponse(PlaidBaseModel):
    added: list[PlaidTransactionModel] = Field(default_factory=list)
    modified: list[PlaidTransactionModel] = Field(default_factory=list)
    removed: list[RemovedTransactionModel] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_changes_page(self) -> ChangesPage:
        # An empty next_cursor is meaningful (no data available yet), so it is
        # passed through rather than replaced with the request cursor.
        return {
            "added": [txn.to_typed() for txn in self.added],
            "modified": [txn.to_typed() for txn in self.modified],
            "removed": [txn.to_typed() for txn in self.removed],
            "next_cursor": self.next_cursor or "",
            "has_more": self.has_more,
        }


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout_seconds = timeout_seconds

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)

        Optional:
        - PLAID_REQUEST_TIMEOUT_SECONDS (defaults to 30)
        """
        env_str = os.getenv("PLAID_ENV", "sandbox").lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{env.upper()}_SECRET")
        timeout_raw = os.getenv("PLAID_REQUEST_TIMEOUT_SECONDS", "30")
        try:
            timeout_seconds = float(timeout_raw)
        except ValueError as e:
            raise PlaidClientError(
                f"Invalid PLAID_REQUEST_TIMEOUT_SECONDS={timeout_raw!r}"
            ) from e
        return cls(
            client_id=client_id,
            secret=secret,
            env=env,
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(f"Missing required environment variable: {name}")
        return value

    def _base_url(self) -> str:
        try:
            return PLAID_ENV_MAP[self._env]
        except KeyError as e:
            raise PlaidClientError(
                f"Unsupported Plaid environment: {self._env!r}"
            ) from e

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                f"Failed to parse Plaid response as JSON: {e}: {body}"
            ) from e

    def _error_from_http(self, status: int, body: str) -> PlaidClientError:
        """Build a PlaidClientError carrying Plaid's error_code when present."""
        try:
            err = PlaidErrorResponse.parse(json.loads(body))
        except (json.JSONDecodeError, ValidationError):
            return PlaidClientError(
                f"Plaid API error ({status}): {body}", status=status
            )
        return PlaidClientError(
            f"Plaid API error ({status}) {err.error_code}: {err.error_message}",
            error_code=err.error_code,
            error_type=err.error_type,
            status=status,
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        body_payload = {
            "client_id": self._client_id,
            "secret": self._secret,
            **payload,
        }
        data = json.dumps(body_payload).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise self._error_from_http(e.code, err_body) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"Network error calling Plaid API: {e}") from e
        except TimeoutError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(
                f"Plaid API call to {path} timed out after {self._timeout_seconds}s"
            ) from e

        return self._parse_json_response(body)

    # High-level APIs -----------------------------------------------------

    def get_accounts(self, access_token: str) -> list[ProviderAccount]:
        """Return accounts for an item using Plaid's /accounts/get endpoint."""
        resp = AccountsGetResponse.parse(
            self._post("/accounts/get", {"access_token": access_token})
        )
        return [account.to_typed() for account in resp.accounts]

    def get_item_info(self, access_token: str) -> PlaidItemInfo:
        """Return item and institution information for an access token."""
        item_resp = ItemGetResponse.parse(
            self._post("/item/get", {"access_token": access_token})
        )

        item_id = item_resp.item.item_id
        institution_id = item_resp.item.institution_id
        institution_name: str | None = None

        if institution_id:
            inst_resp = InstitutionGetByIdResponse.parse(
                self._post(
                    "/institutions/get_by_id",
                    {"institution_id": institution_id, "country_codes": ["US"]},
                )
            )
            if inst_resp.institution and inst_resp.institution.name:
                institution_name = inst_resp.institution.name

        info: PlaidItemInfo = {
            "item_id": item_id,
            "institution_id": institution_id,
            "institution_name": institution_name,
        }
        return info

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> ChangesPage:
        """Thin wrapper around Plaid's /transactions/sync endpoint."""
        payload: dict[str, Any] = {
            "access_token": access_token,
            "count": count,
        }
        if cursor:
            payload["cursor"] = cursor

        resp = TransactionsSyncResponse.parse(self._post("/transactions/sync", payload))
        return resp.to_changes_page()
