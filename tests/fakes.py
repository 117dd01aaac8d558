"""
In-memory fakes for the custody tests.

FakeDatabase implements the subset of motor the repositories and the lock
service use, so the real repositories run unchanged. FakeLedger,
FakeBuilder and FakeSubmitter simulate the venue: a confirmed transaction
moves funds on the fake ledger.

Author: Custody Team
Last Updated: 2026-10-18
"""

import copy
from dataclasses import dataclass
from decimal import Decimal
from itertools import count
from typing import Any, Dict, List, Optional, Set, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

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
    TransactionBuildService,
    TransactionStatus,
    TransactionStatusReading,
    TransactionSubmitter,
)

OWNER = "OwnerWa11etAddress1111111111111111"
OTHER_OWNER = "OtherWa11etAddress2222222222222222"


# ==================== MONGO ====================

@dataclass
class _InsertResult:
    inserted_id: Any


@dataclass
class _UpdateResult:
    matched_count: int
    modified_count: int


@dataclass
class _DeleteResult:
    deleted_count: int


def _matches(document: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    for key, condition in filter.items():
        value = document.get(key)
        if isinstance(condition, dict) and any(op.startswith("$") for op in condition):
            for op, operand in condition.items():
                if op == "$in" and value not in operand:
                    return False
                if op == "$nin" and value in operand:
                    return False
                if op == "$lt" and (value is None or not value < operand):
                    return False
                if op == "$ne" and value == operand:
                    return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]]):
        self._documents = documents

    def sort(self, key_or_list, direction: int = 1) -> "FakeCursor":
        keys = key_or_list if isinstance(key_or_list, list) else [(key_or_list, direction)]
        for key, order in reversed(keys):
            self._documents.sort(
                key=lambda document: (document.get(key) is not None, document.get(key)),
                reverse=order < 0,
            )
        return self

    def skip(self, amount: int) -> "FakeCursor":
        self._documents = self._documents[amount:]
        return self

    def limit(self, amount: int) -> "FakeCursor":
        if amount:
            self._documents = self._documents[:amount]
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        documents = self._documents if length is None else self._documents[:length]
        return [copy.deepcopy(document) for document in documents]


class FakeCollection:
    """
    Unique on _id, plus optional unique indexes given as
    (keys, partial_filter) pairs.
    """

    def __init__(self, unique_indexes: Optional[List[Tuple[Tuple[str, ...], Optional[Dict[str, Any]]]]] = None):
        self.documents: List[Dict[str, Any]] = []
        self.unique_indexes = unique_indexes or []

    def _check_unique(self, document: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        for existing in self.documents:
            if existing is ignore:
                continue
            if existing["_id"] == document["_id"]:
                raise DuplicateKeyError(f"duplicate _id {document['_id']}")
            for keys, partial in self.unique_indexes:
                if partial and not (_matches(existing, partial) and _matches(document, partial)):
                    continue
                if all(existing.get(key) == document.get(key) for key in keys):
                    raise DuplicateKeyError(f"duplicate key {keys}")

    async def find_one(self, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for document in self.documents:
            if _matches(document, filter):
                return copy.deepcopy(document)
        return None

    def find(self, filter: Dict[str, Any]) -> FakeCursor:
        return FakeCursor([document for document in self.documents if _matches(document, filter)])

    async def count_documents(self, filter: Dict[str, Any]) -> int:
        return len([document for document in self.documents if _matches(document, filter)])

    async def insert_one(self, document: Dict[str, Any]) -> _InsertResult:
        document = copy.deepcopy(document)
        document.setdefault("_id", ObjectId())
        self._check_unique(document)
        self.documents.append(document)
        return _InsertResult(inserted_id=document["_id"])

    async def replace_one(self, filter: Dict[str, Any], replacement: Dict[str, Any], upsert: bool = False) -> _UpdateResult:
        for position, document in enumerate(self.documents):
            if _matches(document, filter):
                replacement = copy.deepcopy(replacement)
                replacement.setdefault("_id", document["_id"])
                self._check_unique(replacement, ignore=document)
                self.documents[position] = replacement
                return _UpdateResult(matched_count=1, modified_count=1)
        if upsert:
            await self.insert_one(replacement)
        return _UpdateResult(matched_count=0, modified_count=0)

    async def update_one(self, filter: Dict[str, Any], update: Dict[str, Any]) -> _UpdateResult:
        for document in self.documents:
            if _matches(document, filter):
                changes = update.get("$set", {})
                modified = any(document.get(key) != value for key, value in changes.items())
                document.update(copy.deepcopy(changes))
                return _UpdateResult(matched_count=1, modified_count=1 if modified else 0)
        return _UpdateResult(matched_count=0, modified_count=0)

    async def delete_one(self, filter: Dict[str, Any]) -> _DeleteResult:
        for position, document in enumerate(self.documents):
            if _matches(document, filter):
                del self.documents[position]
                return _DeleteResult(deleted_count=1)
        return _DeleteResult(deleted_count=0)


class FakeDatabase:
    """Dict of FakeCollections with the production unique indexes."""

    UNIQUE_INDEXES = {
        "agent_wallets": [(("owner_address",), {"status": "active"})],
        "subaccounts": [(("agent_wallet_id", "index"), None)],
        "orphaned_subaccounts": [(("agent_wallet_id", "index"), None)],
    }

    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(self.UNIQUE_INDEXES.get(name))
        return self.collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


# ==================== VENUE ====================

class FakeLedger(LedgerQueryService):
    """
    Ledger state keyed by agent address.

    A subaccount exists iff it has an entry in `subaccounts`.
    """

    def __init__(self):
        self.main: Dict[str, Decimal] = {}
        self.subaccounts: Dict[Tuple[str, int], Decimal] = {}
        self.positions: Dict[Tuple[str, int], List[OpenPosition]] = {}
        self.unsettled_pnl: Dict[Tuple[str, int], Decimal] = {}
        self.native: Dict[str, Decimal] = {}
        self.external: Dict[str, Decimal] = {}
        self.transactions: Dict[str, TransactionStatus] = {}

        self.unavailable = False
        self.failing_subaccounts: Set[Tuple[str, int]] = set()
        self.failing_main: Set[str] = set()

    def fund_subaccount(self, agent_address: str, index: int, amount: Decimal) -> None:
        self.subaccounts[(agent_address, index)] = Decimal(amount)

    def _check(self) -> None:
        if self.unavailable:
            raise LedgerUnavailableError("ledger unavailable")

    async def query_balance(self, ref: SubaccountRef) -> BalanceReading:
        self._check()
        key = (ref.agent_address, ref.index)
        if key in self.failing_subaccounts:
            raise LedgerUnavailableError(f"read of subaccount {ref.index} timed out")
        if key not in self.subaccounts:
            return BalanceReading(balance=Decimal("0"), exists=False)
        return BalanceReading(balance=self.subaccounts[key], exists=True)

    async def query_main_balance(self, agent_address: str) -> Decimal:
        self._check()
        if agent_address in self.failing_main:
            raise LedgerUnavailableError("main balance read timed out")
        return self.main.get(agent_address, Decimal("0"))

    async def query_native_balance(self, address: str) -> Decimal:
        self._check()
        return self.native.get(address, Decimal("0"))

    async def list_subaccounts(self, agent_address: str) -> List[int]:
        self._check()
        return sorted(index for address, index in self.subaccounts if address == agent_address)

    async def list_open_positions(self, ref: SubaccountRef) -> List[OpenPosition]:
        self._check()
        return list(self.positions.get((ref.agent_address, ref.index), []))

    async def get_unsettled_pnl(self, ref: SubaccountRef) -> Decimal:
        self._check()
        return self.unsettled_pnl.get((ref.agent_address, ref.index), Decimal("0"))

    async def get_transaction_status(self, signature: str) -> TransactionStatusReading:
        self._check()
        return TransactionStatusReading(status=self.transactions.get(signature, TransactionStatus.NOT_FOUND))


class FakeBuilder(TransactionBuildService):
    def __init__(self):
        self.intents: Dict[str, Tuple[IntentKind, Dict[str, Any]]] = {}
        self.failures: Dict[IntentKind, Exception] = {}
        self._ids = count(1)

    async def build_intent(self, kind: IntentKind, params: Dict[str, Any]) -> BuiltIntent:
        if kind in self.failures:
            raise self.failures[kind]
        intent_id = f"tx-{next(self._ids)}"
        self.intents[intent_id] = (kind, dict(params))
        return BuiltIntent(kind=kind, unsigned_tx=intent_id, confirmation_hints={"intent_id": intent_id})

    def built(self, kind: IntentKind) -> List[Dict[str, Any]]:
        return [params for built_kind, params in self.intents.values() if built_kind == kind]


class FakeSubmitter(TransactionSubmitter):
    """
    Applies a confirmed intent to the FakeLedger.

    `modes` per intent kind: "confirm" (default), "fail" (venue error code in
    `fail_codes`) or "pending" (lands only on `land(signature)`).
    """

    def __init__(self, ledger: FakeLedger, builder: FakeBuilder):
        self.ledger = ledger
        self.builder = builder
        self.modes: Dict[IntentKind, str] = {}
        self.fail_codes: Dict[IntentKind, Tuple[str, str]] = {}
        self.submitted: List[str] = []
        self._pending: Dict[str, Tuple[IntentKind, Dict[str, Any]]] = {}
        self._ids = count(1)

    async def submit_and_confirm(self, signed_tx: str, confirmation_hints: Dict[str, Any]) -> SubmissionResult:
        self.submitted.append(signed_tx)
        kind, params = self.builder.intents[confirmation_hints["intent_id"]]
        signature = f"sig-{next(self._ids)}"
        mode = self.modes.get(kind, "confirm")

        if mode == "fail":
            code, message = self.fail_codes.get(kind, ("insufficient_collateral", "Insufficient collateral"))
            self.ledger.transactions[signature] = TransactionStatus.FAILED
            return SubmissionResult(
                status=SubmissionStatus.FAILED, signature=signature, error_code=code, error_message=message
            )

        if mode == "pending":
            self.ledger.transactions[signature] = TransactionStatus.PENDING
            self._pending[signature] = (kind, params)
            return SubmissionResult(status=SubmissionStatus.STILL_PENDING, signature=signature)

        self._apply(kind, params)
        self.ledger.transactions[signature] = TransactionStatus.CONFIRMED
        return SubmissionResult(status=SubmissionStatus.CONFIRMED, signature=signature)

    def land(self, signature: str) -> None:
        kind, params = self._pending.pop(signature)
        self._apply(kind, params)
        self.ledger.transactions[signature] = TransactionStatus.CONFIRMED

    def _apply(self, kind: IntentKind, params: Dict[str, Any]) -> None:
        ledger = self.ledger
        if kind == IntentKind.SWEEP_SUBACCOUNT:
            agent = params["agent_address"]
            key = (agent, params["from_index"])
            ledger.subaccounts[key] -= params["amount"]
            ledger.main[agent] = ledger.main.get(agent, Decimal("0")) + params["amount"]
        elif kind == IntentKind.WITHDRAW_TO_EXTERNAL:
            agent = params["agent_address"]
            ledger.main[agent] -= params["amount"]
            destination = params["destination"]
            ledger.external[destination] = ledger.external.get(destination, Decimal("0")) + params["amount"]
        elif kind == IntentKind.CLOSE_POSITION:
            key = (params["agent_address"], params["subaccount_index"])
            ledger.positions[key] = [
                position for position in ledger.positions.get(key, []) if position.market != params["market"]
            ]
        elif kind == IntentKind.SETTLE_PNL:
            key = (params["agent_address"], params["subaccount_index"])
            ledger.subaccounts[key] = ledger.subaccounts.get(key, Decimal("0")) + ledger.unsettled_pnl.pop(key, Decimal("0"))
        elif kind == IntentKind.DELETE_SUBACCOUNT:
            ledger.subaccounts.pop((params["agent_address"], params["subaccount_index"]), None)
        elif kind == IntentKind.TRANSFER_NATIVE:
            source = params["from_address"]
            ledger.native[source] -= params["amount"]
            destination = params["destination"]
            ledger.native[destination] = ledger.native.get(destination, Decimal("0")) + params["amount"]
