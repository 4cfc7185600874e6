# FILE: frs/settlement.py
from __future__ import annotations

"""
Settlement orchestrator.

One submission drives a record through

    RECEIVED → PROOF_READY → PROOF_SUBMITTED
        \\            \\
         └──────────────┴──→ FAILED

Every transition is persisted before the next side effect. Compute calls
are retried (transient failures only, linear backoff); the ledger write is
attempted once. Any error after RECEIVED leaves the record FAILED with
`last_error` and is re-raised to the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .chain import ContractRef, LedgerGateway, TxReceipt
from .compute_client import ComputeClient
from .errors import (
    ComputeError,
    InvalidProofError,
    LedgerError,
    TransientError,
    ValidationError,
)
from .store import SettlementRecord, SettlementStatus, SubmissionStore
from .utils import canonical_json_dumps

_log = logging.getLogger(__name__)

# ---------- Metrics ----------

_COMPUTE_FAILURES = Counter(
    "frs_compute_failures_total",
    "Failed compute attempts",
    ["service"],
)
_COMPUTE_SECONDS = Histogram(
    "frs_compute_seconds",
    "Compute attempt latency (seconds)",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
_ONCHAIN = Counter(
    "frs_onchain_submissions_total",
    "Ledger writes by outcome and write path",
    ["status", "path"],
)
_SETTLEMENTS = Counter(
    "frs_settlements_total",
    "Settlements reaching a terminal status",
    ["status"],
)

_COMPUTE_SERVICE = "inco"


# ---------- Request model ----------


class SettlementRequest(BaseModel):
    """Inbound income submission (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    asset_id: int = Field(alias="assetId", ge=0)
    period: str = Field(min_length=1)
    income_amount: int = Field(alias="incomeAmount", ge=0)
    investor_share: int = Field(alias="investorShare", ge=0)
    owner_share: int = Field(alias="ownerShare", ge=0)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey", min_length=1)
    id: Optional[str] = None

    @field_validator("period", mode="before")
    @classmethod
    def _period_to_str(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    @classmethod
    def parse(cls, body: Union["SettlementRequest", Mapping[str, Any]]) -> "SettlementRequest":
        """Validate a raw body; ValidationError names every bad field."""
        if isinstance(body, cls):
            return body
        if not isinstance(body, Mapping):
            raise ValidationError("request body must be an object")
        try:
            return cls.model_validate(dict(body))
        except PydanticValidationError as e:
            fields: List[str] = []
            for err in e.errors():
                loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
                if loc not in fields:
                    fields.append(loc)
            raise ValidationError(
                f"invalid settlement request: {', '.join(fields)}", fields
            ) from e

    def row_id(self, idempotency_key: Optional[str] = None) -> str:
        """Explicit key, then body idempotencyKey, then body id, then assetId:period."""
        return (
            idempotency_key
            or self.idempotency_key
            or self.id
            or f"{self.asset_id}:{self.period}"
        )


def period_number(period: str) -> int:
    """Digits of a period label as an integer ("2026-01" → 202601)."""
    digits = "".join(ch for ch in str(period) if ch.isdigit())
    if not digits:
        raise ValidationError(f"period {period!r} has no digits", ["period"])
    return int(digits)


# ---------- Ledger write paths ----------


@dataclass(frozen=True)
class PayoutWrite:
    """Primary path: payout manager verifies the proof and pays out."""

    contract: ContractRef
    name = "payout"
    method = "submitProofAndPayout"

    def args(self, rec: SettlementRecord, proof: Any) -> List[Any]:
        return [rec.asset_id, rec.period, proof, [rec.commitment or "0x0"]]


@dataclass(frozen=True)
class OracleVerifyWrite:
    """Fallback path: record verified income on the oracle contract."""

    contract: ContractRef
    name = "oracle_verify"
    method = "verifyIncome"

    def args(self, rec: SettlementRecord, proof: Any) -> List[Any]:
        return [
            rec.asset_id,
            rec.income_amount,
            period_number(rec.period),
            rec.commitment or "inco-proof",
        ]


WritePath = Union[PayoutWrite, OracleVerifyWrite]


def resolve_write_path(
    ledger: LedgerGateway,
    payout: Optional[ContractRef],
    oracle: Optional[ContractRef],
) -> WritePath:
    """Pick the write path by probing the payout contract's interface."""
    if payout is not None and ledger.has_method(payout, PayoutWrite.method):
        return PayoutWrite(payout)
    if oracle is not None:
        return OracleVerifyWrite(oracle)
    raise LedgerError("no ledger write path: payout contract lacks submitProofAndPayout and no oracle contract is configured")


# ---------- Orchestrator ----------


@dataclass(frozen=True)
class SettlementResult:
    record: SettlementRecord
    receipt: TxReceipt
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "rowId": self.record.id, "receipt": self.receipt.to_dict()}


class SettlementOrchestrator:
    def __init__(
        self,
        store: SubmissionStore,
        compute: ComputeClient,
        ledger: LedgerGateway,
        *,
        program: str = "futureRentPayoutLogic_v1",
        payout_contract: Optional[ContractRef] = None,
        oracle_contract: Optional[ContractRef] = None,
        max_attempts: int = 3,
        base_delay_s: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._compute = compute
        self._ledger = ledger
        self.program = program
        self.payout_contract = payout_contract
        self.oracle_contract = oracle_contract
        self.max_attempts = int(max_attempts)
        self.base_delay_s = max(0.0, float(base_delay_s))
        self._sleep = sleep

    # ----- public API -----

    def get(self, row_id: str) -> Optional[SettlementRecord]:
        return self._store.get_settlement(row_id)

    async def submit(
        self,
        request: Union[SettlementRequest, Mapping[str, Any]],
        *,
        idempotency_key: Optional[str] = None,
    ) -> SettlementResult:
        req = SettlementRequest.parse(request)
        rec = self._store.upsert_settlement(
            SettlementRecord(
                id=req.row_id(idempotency_key),
                asset_id=req.asset_id,
                period=req.period,
                income_amount=req.income_amount,
                investor_share=req.investor_share,
                owner_share=req.owner_share,
                status=SettlementStatus.RECEIVED,
            )
        )
        _log.info(
            "settlement received",
            extra={"row_id": rec.id, "asset_id": rec.asset_id, "period": rec.period, "status": rec.status.value},
        )

        try:
            resp = await self._compute_with_retry(rec)
            proof_id, commitment = self._accept_proof(resp)
            rec = self._store.upsert_settlement(
                rec.transition(SettlementStatus.PROOF_READY, proof_id=proof_id, commitment=commitment)
            )
            _log.info("proof ready", extra={"row_id": rec.id, "status": rec.status.value})

            path = resolve_write_path(self._ledger, self.payout_contract, self.oracle_contract)
            receipt = await self._write_ledger(rec, path, resp.get("proof", "0x"))

            rec = self._store.upsert_settlement(
                rec.transition(SettlementStatus.PROOF_SUBMITTED, tx_hash=receipt.tx_hash)
            )
        except Exception as e:
            self._mark_failed(rec, e)
            raise

        _SETTLEMENTS.labels(status=rec.status.value).inc()
        _log.info(
            "settlement submitted",
            extra={"row_id": rec.id, "status": rec.status.value, "path": path.name, "tx_hash": rec.tx_hash},
        )
        return SettlementResult(record=rec, receipt=receipt, path=path.name)

    def fail_interrupted(self, reason: str = "interrupted before completion") -> List[str]:
        """
        Mark records a previous process left mid-flight (RECEIVED or
        PROOF_READY) as FAILED. Returns the affected ids.
        """
        stale = self._store.list_settlements(
            statuses=(SettlementStatus.RECEIVED, SettlementStatus.PROOF_READY)
        )
        ids = []
        for rec in stale:
            self._store.upsert_settlement(rec.transition(SettlementStatus.FAILED, last_error=reason))
            _SETTLEMENTS.labels(status=SettlementStatus.FAILED.value).inc()
            ids.append(rec.id)
        if ids:
            _log.warning("failed interrupted settlements", extra={"count": len(ids), "ids": ids})
        return ids

    # ----- steps -----

    async def _compute_with_retry(self, rec: SettlementRecord) -> Dict[str, Any]:
        public_inputs = {"assetId": rec.asset_id, "period": rec.period}
        private_inputs = {
            "income": rec.income_amount,
            "investorShare": rec.investor_share,
            "ownerShare": rec.owner_share,
        }
        last_err: Optional[TransientError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._compute_once(rec, public_inputs, private_inputs)
            except TransientError as e:
                _COMPUTE_FAILURES.labels(service=_COMPUTE_SERVICE).inc()
                last_err = e
                _log.warning(
                    "compute attempt failed: %s",
                    e,
                    extra={"row_id": rec.id, "attempt": attempt},
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.base_delay_s * attempt)
            except ComputeError:
                # permanent or circuit open: no point retrying inside this request
                _COMPUTE_FAILURES.labels(service=_COMPUTE_SERVICE).inc()
                raise
        assert last_err is not None
        raise last_err

    async def _compute_once(
        self,
        rec: SettlementRecord,
        public_inputs: Dict[str, Any],
        private_inputs: Dict[str, Any],
    ) -> Dict[str, Any]:
        # latency of the call alone, backoff sleeps excluded
        t0 = time.perf_counter()
        try:
            return await self._compute.compute(
                self.program, public_inputs, private_inputs, {"requestId": rec.id}
            )
        finally:
            _COMPUTE_SECONDS.observe(time.perf_counter() - t0)

    @staticmethod
    def _accept_proof(resp: Mapping[str, Any]) -> tuple:
        if resp.get("status") != "VALID":
            raise InvalidProofError(f"compute status {resp.get('status')!r}", response=resp)
        proof_id = resp.get("proofId") or resp.get("proof_id")
        public_output = resp.get("publicOutput")
        commitment = public_output.get("commitment") if isinstance(public_output, Mapping) else None
        if not proof_id or not commitment:
            raise InvalidProofError("VALID response without proofId/commitment", response=resp)
        return str(proof_id), str(commitment)

    async def _write_ledger(self, rec: SettlementRecord, path: WritePath, proof: Any) -> TxReceipt:
        # no tx is sent when the arguments cannot be built
        args = path.args(rec, proof)
        try:
            receipt = await self._ledger.send_tx(path.contract, path.method, args)
            if receipt.status != 1:
                raise LedgerError(f"{path.method} reverted in tx {receipt.tx_hash}")
        except Exception:
            _ONCHAIN.labels(status="failed", path=path.name).inc()
            raise
        _ONCHAIN.labels(status="submitted", path=path.name).inc()
        return receipt

    def _mark_failed(self, rec: SettlementRecord, err: Exception) -> None:
        if isinstance(err, InvalidProofError) and err.response is not None:
            diagnosis = canonical_json_dumps(err.response)
        else:
            diagnosis = f"{type(err).__name__}: {err}"
        try:
            self._store.upsert_settlement(rec.transition(SettlementStatus.FAILED, last_error=diagnosis))
        except Exception:
            # the caller still gets the original error
            _log.exception("could not persist FAILED status", extra={"row_id": rec.id})
            return
        _SETTLEMENTS.labels(status=SettlementStatus.FAILED.value).inc()
        _log.error(
            "settlement failed: %s",
            diagnosis,
            extra={"row_id": rec.id, "status": SettlementStatus.FAILED.value},
        )


__all__ = [
    "SettlementRequest",
    "period_number",
    "PayoutWrite",
    "OracleVerifyWrite",
    "resolve_write_path",
    "SettlementResult",
    "SettlementOrchestrator",
]
