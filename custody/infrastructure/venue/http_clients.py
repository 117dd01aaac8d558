"""
Venue HTTP Clients

httpx-based clients for the ledger query, transaction build and submission
services.

Author: Custody Team
Last Updated: 2026-10-18
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from custody.infrastructure.venue.base import (
    BalanceReading,
    BuiltIntent,
    IntentKind,
    LedgerQueryService,
    LedgerUnavailableError,
    OpenPosition,
    SubaccountRef,
    SubmissionResult,
    SubmissionStatus,
    TransactionBuildError,
    TransactionBuildService,
    TransactionStatus,
    TransactionStatusReading,
    TransactionSubmitter,
    venue_error_from_code,
)
from custody.shared.models import to_storable
from custody.utils.logger import get_logger

logger = get_logger(__name__)


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise LedgerUnavailableError(f"Unparseable amount from ledger: {value!r}") from e


class _VenueHttpClient:
    """Shared httpx plumbing: lazily created AsyncClient with auth header."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"User-Agent": "CustodyCoordinator/1.0"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


# ==================== LEDGER ====================

class HttpLedgerQueryService(_VenueHttpClient, LedgerQueryService):
    """
    Ledger query service over HTTP.

    Every transport or protocol failure surfaces as LedgerUnavailableError so
    callers can fall back to cached values instead of reading a zero.
    """

    async def _get_json(self, path: str) -> Dict[str, Any]:
        try:
            client = await self._get_client()
            response = await client.get(path)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Ledger read failed: {path}: {e}")
            raise LedgerUnavailableError(f"Ledger read failed for {path}: {e}") from e
        except ValueError as e:
            raise LedgerUnavailableError(f"Ledger returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise LedgerUnavailableError(f"Ledger returned an unexpected body for {path}")
        return data

    async def query_balance(self, ref: SubaccountRef) -> BalanceReading:
        data = await self._get_json(f"/v1/subaccounts/{ref.agent_address}/{ref.index}/balance")
        exists = data.get("exists") is True
        balance = _to_decimal(data.get("balance", "0")) if exists else Decimal("0")
        return BalanceReading(balance=balance, exists=exists)

    async def query_main_balance(self, agent_address: str) -> Decimal:
        data = await self._get_json(f"/v1/accounts/{agent_address}/main-balance")
        return _to_decimal(data.get("balance", "0"))

    async def query_native_balance(self, address: str) -> Decimal:
        data = await self._get_json(f"/v1/addresses/{address}/native-balance")
        return _to_decimal(data.get("balance", "0"))

    async def list_subaccounts(self, agent_address: str) -> List[int]:
        data = await self._get_json(f"/v1/accounts/{agent_address}/subaccounts")
        try:
            indexes = {int(i) for i in data.get("indexes", [])}
        except (TypeError, ValueError) as e:
            raise LedgerUnavailableError(f"Unparseable subaccount list for {agent_address}") from e
        return sorted(indexes - {0})

    async def list_open_positions(self, ref: SubaccountRef) -> List[OpenPosition]:
        data = await self._get_json(f"/v1/subaccounts/{ref.agent_address}/{ref.index}/positions")
        positions = []
        for item in data.get("positions", []):
            base_size = _to_decimal(item.get("base_size", "0"))
            if base_size == 0:
                continue
            positions.append(OpenPosition(
                market=item["market"],
                base_size=base_size,
                entry_price=_to_decimal(item.get("entry_price", "0")),
                unrealized_pnl=_to_decimal(item.get("unrealized_pnl", "0")),
            ))
        return positions

    async def get_unsettled_pnl(self, ref: SubaccountRef) -> Decimal:
        data = await self._get_json(f"/v1/subaccounts/{ref.agent_address}/{ref.index}/unsettled-pnl")
        return _to_decimal(data.get("pnl", "0"))

    async def get_transaction_status(self, signature: str) -> TransactionStatusReading:
        data = await self._get_json(f"/v1/transactions/{signature}")
        try:
            status = TransactionStatus(data.get("status", "not_found"))
        except ValueError:
            status = TransactionStatus.NOT_FOUND
        return TransactionStatusReading(
            status=status,
            error_code=data.get("error_code"),
            error_message=data.get("error_message"),
        )


# ==================== TRANSACTION BUILD ====================

def _json_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Response body as a dict, or None if it isn't a JSON object."""
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class HttpTransactionBuildService(_VenueHttpClient, TransactionBuildService):
    """Transaction build service over HTTP."""

    async def build_intent(self, kind: IntentKind, params: Dict[str, Any]) -> BuiltIntent:
        payload = {"kind": kind.value, "params": to_storable(params)}
        try:
            client = await self._get_client()
            response = await client.post("/v1/intents", json=payload)
        except httpx.HTTPError as e:
            raise TransactionBuildError(f"Build service unreachable: {e}") from e

        if response.status_code in (400, 409, 422):
            # Venue refused the intent up front (e.g. insufficient collateral)
            body = _json_body(response)
            if body is None:
                raise TransactionBuildError(
                    f"Build service rejected {kind.value} ({response.status_code}): {response.text[:200]}"
                )
            raise venue_error_from_code(body.get("error_code"), body.get("message", response.text))

        try:
            response.raise_for_status()
            body = response.json()
            return BuiltIntent(
                kind=kind,
                unsigned_tx=body["unsigned_tx"],
                confirmation_hints=body.get("confirmation_hints", {}),
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise TransactionBuildError(f"Build service failed for {kind.value}: {e}") from e


# ==================== SUBMISSION ====================

class HttpTransactionSubmitter(_VenueHttpClient, TransactionSubmitter):
    """
    Submission service over HTTP.

    Once the request has left this process the broadcast may have landed, so
    only an explicit "failed" status or a 4xx rejection is a failure. Timeouts,
    5xx replies and unreadable bodies are STILL_PENDING, and the confirmer
    polls the ledger with the signature from the confirmation hints.
    """

    async def submit_and_confirm(
        self,
        signed_tx: str,
        confirmation_hints: Dict[str, Any]
    ) -> SubmissionResult:
        client = await self._get_client()
        try:
            response = await client.post(
                "/v1/transactions",
                json={"signed_tx": signed_tx, "confirmation_hints": to_storable(confirmation_hints)},
            )
        except httpx.ConnectError as e:
            # Never reached the service; nothing was broadcast
            return SubmissionResult(
                status=SubmissionStatus.FAILED,
                error_code="submission_unreachable",
                error_message=str(e),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Submission outcome unknown: {e}")
            return self._unknown(confirmation_hints, str(e))

        body = _json_body(response)

        if 400 <= response.status_code < 500:
            body = body or {}
            return SubmissionResult(
                status=SubmissionStatus.FAILED,
                signature=body.get("signature") or confirmation_hints.get("signature"),
                error_code=body.get("error_code") or f"http_{response.status_code}",
                error_message=body.get("error_message") or body.get("message") or response.text[:200],
            )

        if response.status_code >= 500 or body is None:
            logger.warning(f"Submission outcome unknown: HTTP {response.status_code}: {response.text[:200]}")
            return self._unknown(confirmation_hints, f"HTTP {response.status_code}")

        try:
            status = SubmissionStatus(body.get("status"))
        except ValueError:
            logger.warning(f"Submission reply without a known status: {body}")
            return self._unknown(confirmation_hints, f"Unrecognised submission status {body.get('status')!r}")

        return SubmissionResult(
            status=status,
            signature=body.get("signature") or confirmation_hints.get("signature"),
            error_code=body.get("error_code"),
            error_message=body.get("error_message"),
        )

    def _unknown(self, confirmation_hints: Dict[str, Any], message: str) -> SubmissionResult:
        return SubmissionResult(
            status=SubmissionStatus.STILL_PENDING,
            signature=confirmation_hints.get("signature"),
            error_message=message,
        )
