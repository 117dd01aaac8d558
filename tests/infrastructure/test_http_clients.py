"""
Venue HTTP Client Tests

The ledger, build and submission clients against canned venue replies
(httpx.MockTransport), plus the Redis-backed snapshot store.
Covers: "exists vs zero" parsing, typed venue errors, unreachable and
unreadable services, and ambiguous submissions that must be polled.

Author: Custody Team
Last Updated: 2026-10-18
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from custody.domain.models.capital import CapitalSnapshot, SubaccountEntry
from custody.infrastructure.venue.base import (
    InsufficientCollateralError,
    IntentKind,
    LedgerUnavailableError,
    MarketPausedError,
    SubaccountRef,
    SubmissionStatus,
    TransactionBuildError,
    TransactionStatus,
)
from custody.infrastructure.venue.http_clients import (
    HttpLedgerQueryService,
    HttpTransactionBuildService,
    HttpTransactionSubmitter,
)
from custody.modules.capital.snapshot_store import RedisSnapshotStore
from custody.modules.lifecycle.confirmation import ConfirmationOutcome, ConfirmationPolicy, TransactionConfirmer
from tests.fakes import FakeLedger

BASE_URL = "http://venue.test"
REF = SubaccountRef(agent_address="AgentAddr", index=2)
HINTS = {"signature": "sig-1"}


def replying(*args, **kwargs):
    """Transport that answers every request with the same response"""
    return httpx.MockTransport(lambda request: httpx.Response(*args, **kwargs))


def raising(exc_type):
    """Transport whose requests fail with an httpx transport error"""
    def handler(request):
        raise exc_type("venue down", request=request)
    return httpx.MockTransport(handler)


async def no_sleep(delay):
    return None


# ==================== LEDGER ====================

@pytest.mark.asyncio
async def test_ledger_balance_of_existing_subaccount():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"exists": True, "balance": "120.50"})

    ledger = HttpLedgerQueryService(BASE_URL, api_key="secret", transport=httpx.MockTransport(handler))

    reading = await ledger.query_balance(REF)

    assert reading.exists is True
    assert reading.balance == Decimal("120.50")
    assert requests[0].url.path == "/v1/subaccounts/AgentAddr/2/balance"
    assert requests[0].headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_ledger_missing_subaccount_is_not_a_zero_balance():
    """Test: exists=false is reported as missing, whatever balance field comes with it"""
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"exists": False, "balance": "7"}))

    reading = await ledger.query_balance(REF)

    assert reading.exists is False
    assert reading.balance == Decimal("0")


@pytest.mark.asyncio
async def test_ledger_exists_must_be_a_real_boolean():
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"exists": "false", "balance": "7"}))

    assert (await ledger.query_balance(REF)).exists is False


@pytest.mark.asyncio
@pytest.mark.parametrize("transport", [
    replying(503, json={"message": "maintenance"}),
    replying(200, text="<html>not json</html>"),
    replying(200, json=["not", "an", "object"]),
    raising(httpx.ConnectError),
    raising(httpx.ReadTimeout),
])
async def test_ledger_failures_are_unavailable_not_zero(transport):
    """Test: 5xx, transport errors and unreadable bodies raise instead of reading zero"""
    ledger = HttpLedgerQueryService(BASE_URL, transport=transport)

    with pytest.raises(LedgerUnavailableError):
        await ledger.query_main_balance("AgentAddr")


@pytest.mark.asyncio
async def test_ledger_unparseable_amount():
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"exists": True, "balance": "12,5 USDC"}))

    with pytest.raises(LedgerUnavailableError):
        await ledger.query_balance(REF)


@pytest.mark.asyncio
async def test_ledger_subaccount_list_excludes_main_account():
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"indexes": [0, 3, "1", 3]}))

    assert await ledger.list_subaccounts("AgentAddr") == [1, 3]


@pytest.mark.asyncio
async def test_ledger_unparseable_subaccount_list():
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"indexes": ["one"]}))

    with pytest.raises(LedgerUnavailableError):
        await ledger.list_subaccounts("AgentAddr")


@pytest.mark.asyncio
async def test_ledger_positions_skip_flat_markets():
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"positions": [
        {"market": "SOL-PERP", "base_size": "2.5", "entry_price": "140"},
        {"market": "ETH-PERP", "base_size": "0"},
    ]}))

    positions = await ledger.list_open_positions(REF)

    assert [(p.market, p.base_size) for p in positions] == [("SOL-PERP", Decimal("2.5"))]


@pytest.mark.asyncio
async def test_ledger_unknown_transaction_status_reads_not_found():
    ledger = HttpLedgerQueryService(BASE_URL, transport=replying(200, json={"status": "finalizing"}))

    reading = await ledger.get_transaction_status("sig-1")

    assert reading.status == TransactionStatus.NOT_FOUND


# ==================== TRANSACTION BUILD ====================

@pytest.mark.asyncio
async def test_build_intent():
    builder = HttpTransactionBuildService(BASE_URL, transport=replying(
        200, json={"unsigned_tx": "base64tx", "confirmation_hints": {"signature": "sig-9"}}
    ))

    built = await builder.build_intent(IntentKind.DELETE_SUBACCOUNT, {"subaccount_index": 2})

    assert built.kind == IntentKind.DELETE_SUBACCOUNT
    assert built.unsigned_tx == "base64tx"
    assert built.confirmation_hints == {"signature": "sig-9"}


@pytest.mark.asyncio
async def test_build_rejection_maps_to_typed_venue_error():
    """Test: A 4xx with an error_code raises the matching venue error, message kept verbatim"""
    builder = HttpTransactionBuildService(BASE_URL, transport=replying(
        400, json={"error_code": "insufficient_collateral", "message": "Free collateral 3.2 < 10"}
    ))

    with pytest.raises(InsufficientCollateralError) as exc_info:
        await builder.build_intent(IntentKind.WITHDRAW_TO_EXTERNAL, {"amount": Decimal("10")})

    assert exc_info.value.raw_message == "Free collateral 3.2 < 10"


@pytest.mark.asyncio
@pytest.mark.parametrize("transport", [
    replying(400, text="bad request"),
    replying(502, text="<html>Bad Gateway</html>"),
    replying(200, json={"confirmation_hints": {}}),
    raising(httpx.ConnectError),
])
async def test_build_failures_are_build_errors(transport):
    """Test: Non-JSON rejections, 5xx, incomplete replies and outages raise TransactionBuildError"""
    builder = HttpTransactionBuildService(BASE_URL, transport=transport)

    with pytest.raises(TransactionBuildError):
        await builder.build_intent(IntentKind.SWEEP_SUBACCOUNT, {"subaccount_index": 2})


# ==================== SUBMISSION ====================

@pytest.mark.asyncio
async def test_submission_confirmed():
    submitter = HttpTransactionSubmitter(BASE_URL, transport=replying(
        200, json={"status": "confirmed", "signature": "sig-7"}
    ))

    result = await submitter.submit_and_confirm("signed", HINTS)

    assert result.status == SubmissionStatus.CONFIRMED
    assert result.signature == "sig-7"


@pytest.mark.asyncio
async def test_explicit_failed_status_is_failure():
    submitter = HttpTransactionSubmitter(BASE_URL, transport=replying(
        200, json={"status": "failed", "error_code": "market_paused", "error_message": "SOL-PERP paused"}
    ))

    result = await submitter.submit_and_confirm("signed", HINTS)

    assert result.status == SubmissionStatus.FAILED
    assert result.error_code == "market_paused"


@pytest.mark.asyncio
async def test_client_error_is_failure():
    submitter = HttpTransactionSubmitter(BASE_URL, transport=replying(
        422, json={"error_code": "reduce_only", "error_message": "Market is reduce-only"}
    ))

    result = await submitter.submit_and_confirm("signed", HINTS)

    assert result.status == SubmissionStatus.FAILED
    assert result.error_code == "reduce_only"


@pytest.mark.asyncio
async def test_client_error_without_json_is_failure():
    submitter = HttpTransactionSubmitter(BASE_URL, transport=replying(400, text="malformed transaction"))

    result = await submitter.submit_and_confirm("signed", HINTS)

    assert result.status == SubmissionStatus.FAILED
    assert result.error_code == "http_400"
    assert result.error_message == "malformed transaction"


@pytest.mark.asyncio
@pytest.mark.parametrize("transport", [
    replying(504, json={"message": "upstream timeout"}),
    replying(502, text="<html>Bad Gateway</html>"),
    replying(500, json={"status": "failed"}),
    replying(200, json={"message": "accepted"}),
    replying(200, json={"status": "queued"}),
    replying(200, text=""),
    raising(httpx.ReadTimeout),
])
async def test_ambiguous_submission_is_still_pending(transport):
    """Test: Once sent, gateway errors and unreadable replies are pending with the hinted signature"""
    submitter = HttpTransactionSubmitter(BASE_URL, transport=transport)

    result = await submitter.submit_and_confirm("signed", HINTS)

    assert result.status == SubmissionStatus.STILL_PENDING
    assert result.signature == "sig-1"


@pytest.mark.asyncio
async def test_unreachable_submission_service_is_failure():
    """Test: A connection that never opened broadcast nothing"""
    submitter = HttpTransactionSubmitter(BASE_URL, transport=raising(httpx.ConnectError))

    result = await submitter.submit_and_confirm("signed", HINTS)

    assert result.status == SubmissionStatus.FAILED
    assert result.error_code == "submission_unreachable"


@pytest.mark.asyncio
async def test_gateway_timeout_is_polled_on_the_ledger():
    """Test: A 504 on submission is resolved by the ledger, never reported as failed"""
    ledger = FakeLedger()
    ledger.transactions["sig-1"] = TransactionStatus.CONFIRMED
    confirmer = TransactionConfirmer(
        HttpTransactionSubmitter(BASE_URL, transport=replying(504, json={"message": "upstream timeout"})),
        ledger,
        policy=ConfirmationPolicy(max_attempts=3),
        sleep=no_sleep,
    )

    result = await confirmer.submit("signed", HINTS, "op-1")

    assert result.outcome == ConfirmationOutcome.CONFIRMED
    assert result.signature == "sig-1"


@pytest.mark.asyncio
async def test_venue_rejection_reaches_confirmer_typed():
    confirmer = TransactionConfirmer(
        HttpTransactionSubmitter(BASE_URL, transport=replying(
            200, json={"status": "failed", "error_code": "market_paused", "error_message": "SOL-PERP paused"}
        )),
        FakeLedger(),
        policy=ConfirmationPolicy(max_attempts=3),
        sleep=no_sleep,
    )

    result = await confirmer.submit("signed", HINTS, "op-1")

    assert result.outcome == ConfirmationOutcome.FAILED
    assert isinstance(result.error, MarketPausedError)


# ==================== SNAPSHOT STORE ====================

@pytest.fixture
def redis_client():
    """AsyncMock redis client backed by a dict"""
    values = {}
    client = AsyncMock()
    client.values = values

    async def set_value(key, value, ex=None):
        values[key] = value

    async def get_value(key):
        return values.get(key)

    client.set.side_effect = set_value
    client.get.side_effect = get_value
    return client


@pytest.mark.asyncio
async def test_redis_snapshot_store_replaces_snapshot(redis_client):
    """Test: Publishing writes one key with a TTL; reads return the latest split intact"""
    store = RedisSnapshotStore(ttl_seconds=600, client=redis_client)
    first = CapitalSnapshot(
        agent_wallet_id="wallet-1",
        available_balance=Decimal("50"),
        entries=(SubaccountEntry(index=1, trading_bot_id="bot-1", balance=Decimal("120")),),
        last_updated=datetime.now(timezone.utc),
    )
    second = first.model_copy(update={"available_balance": Decimal("170"), "entries": ()})

    await store.publish(first)
    await store.publish(second)
    stored = await store.get("wallet-1")

    assert list(redis_client.values) == ["capital_snapshot:wallet-1"]
    assert redis_client.set.await_args.kwargs["ex"] == 600
    assert stored.available_balance == Decimal("170")
    assert stored.entries == ()
    assert stored.total_equity == Decimal("170")


@pytest.mark.asyncio
async def test_redis_snapshot_store_miss(redis_client):
    store = RedisSnapshotStore(ttl_seconds=600, client=redis_client)

    assert await store.get("unknown") is None
