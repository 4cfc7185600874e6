# FILE: frs/store.py
from __future__ import annotations

"""
Durable submission store: settlement records and captured chain events.

Goals:
  - Single source of truth for "has this income period been settled".
  - Keyed upsert for both tables: a repeated id / (token_id, investor)
    overwrites instead of duplicating, so replays converge.
  - Production-ready SQLite backend (WAL) with a versioned schema.

Notes:
  - The store does not enforce the settlement state machine ordering; the
    orchestrator's control flow does. It only rejects records that break
    the per-status field invariants.
  - Investor addresses are compared case-insensitively.
"""

import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional

from prometheus_client import Counter, Histogram

from .errors import StoreError
from .utils import utc_now_iso

# ---------- Metrics ----------

_SETTLEMENT_WRITES = Counter(
    "frs_store_settlement_writes_total",
    "Settlement record upserts by status",
    ["status"],
)
_EVENT_UPSERTS = Counter(
    "frs_store_chain_event_upserts_total",
    "Chain event upserts by outcome",
    ["outcome"],
)
_EVENT_DELETES = Counter(
    "frs_store_chain_event_deletes_total",
    "Chain event rows deleted",
)
_TX_LAT = Histogram(
    "frs_store_tx_latency_seconds",
    "SQLite transaction latency (seconds)",
    buckets=(0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.2),
)


# ---------- Data Models ----------


class SettlementStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PROOF_READY = "PROOF_READY"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (SettlementStatus.PROOF_SUBMITTED, SettlementStatus.FAILED)


@dataclass(frozen=True)
class SettlementRecord:
    id: str
    asset_id: int
    period: str
    income_amount: int
    investor_share: int
    owner_share: int
    status: SettlementStatus
    proof_id: Optional[str] = None
    commitment: Optional[str] = None
    tx_hash: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def check_invariants(self) -> None:
        """
        Field invariants per status:
          - tx_hash is set iff PROOF_SUBMITTED
          - proof_id / commitment are unset in RECEIVED and set in
            PROOF_READY / PROOF_SUBMITTED (FAILED keeps whatever was reached)
          - last_error is set iff FAILED
        """
        st = self.status
        if (self.tx_hash is not None) != (st is SettlementStatus.PROOF_SUBMITTED):
            raise StoreError(f"{self.id}: tx_hash must be set iff status is PROOF_SUBMITTED")
        if st is SettlementStatus.RECEIVED and (self.proof_id or self.commitment):
            raise StoreError(f"{self.id}: RECEIVED record cannot carry proof fields")
        if st in (SettlementStatus.PROOF_READY, SettlementStatus.PROOF_SUBMITTED):
            if self.proof_id is None or self.commitment is None:
                raise StoreError(f"{self.id}: {st.value} requires proof_id and commitment")
        if (self.last_error is not None) != (st is SettlementStatus.FAILED):
            raise StoreError(f"{self.id}: last_error must be set iff status is FAILED")

    def transition(self, status: SettlementStatus, **changes) -> "SettlementRecord":
        """Copy with a new status; last_error is cleared unless given."""
        changes.setdefault("last_error", None)
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "assetId": self.asset_id,
            "period": self.period,
            "incomeAmount": self.income_amount,
            "investorShare": self.investor_share,
            "ownerShare": self.owner_share,
            "status": self.status.value,
            "proofId": self.proof_id,
            "commitment": self.commitment,
            "txHash": self.tx_hash,
            "lastError": self.last_error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class ChainEvent:
    token_id: str
    investor: str
    share_percent: str
    invested_amount: str
    timestamp: int
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.token_id, self.investor.lower())

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "investor": self.investor,
            "sharePercent": self.share_percent,
            "investedAmount": self.invested_amount,
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "txHash": self.tx_hash,
        }


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    @property
    def changed(self) -> bool:
        return self is not UpsertOutcome.UNCHANGED


# ---------- Base Interface ----------


class SubmissionStore:
    """
    Abstract store API: insert-or-replace, select-by-key, select-all,
    delete-by-key for both tables.
    """

    # Settlements

    def upsert_settlement(self, rec: SettlementRecord) -> SettlementRecord:
        raise NotImplementedError

    def get_settlement(self, row_id: str) -> Optional[SettlementRecord]:
        raise NotImplementedError

    def list_settlements(
        self, *, statuses: Optional[Iterable[SettlementStatus]] = None
    ) -> List[SettlementRecord]:
        raise NotImplementedError

    # Chain events

    def upsert_chain_event(self, evt: ChainEvent) -> UpsertOutcome:
        raise NotImplementedError

    def get_chain_event(self, token_id: str, investor: str) -> Optional[ChainEvent]:
        raise NotImplementedError

    def list_chain_events(
        self, *, token_id: Optional[str] = None, investor: Optional[str] = None
    ) -> List[ChainEvent]:
        raise NotImplementedError

    def delete_chain_event(self, token_id: str, investor: str) -> int:
        raise NotImplementedError

    def delete_chain_events_for_token(self, token_id: str) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


# ---------- SQLite Implementation ----------

# Schema v1 (initial)
_SCHEMA_V1 = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS settlements (
  id              TEXT PRIMARY KEY,              -- idempotency key
  asset_id        INTEGER NOT NULL,
  period          TEXT NOT NULL,
  income_amount   INTEGER NOT NULL,
  investor_share  INTEGER NOT NULL,
  owner_share     INTEGER NOT NULL,
  status          TEXT NOT NULL CHECK (status IN ('RECEIVED','PROOF_READY','PROOF_SUBMITTED','FAILED')),
  proof_id        TEXT,
  commitment      TEXT,
  tx_hash         TEXT,
  last_error      TEXT,
  created_at      TEXT NOT NULL,
  updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chain_events (
  token_id        TEXT NOT NULL,
  investor_key    TEXT NOT NULL,                 -- lower(investor)
  investor        TEXT NOT NULL,
  share_percent   TEXT NOT NULL,
  invested_amount TEXT NOT NULL,
  ts              INTEGER NOT NULL,
  PRIMARY KEY (token_id, investor_key)
);
"""

# Schema v2 (log provenance + lookup indexes)
_SCHEMA_V2 = """
ALTER TABLE chain_events ADD COLUMN block_number INTEGER;
ALTER TABLE chain_events ADD COLUMN tx_hash TEXT;
CREATE INDEX IF NOT EXISTS idx_chain_events_investor ON chain_events(investor_key);
CREATE INDEX IF NOT EXISTS idx_settlements_status ON settlements(status);
"""

_SETTLEMENT_COLS = (
    "id, asset_id, period, income_amount, investor_share, owner_share, status, "
    "proof_id, commitment, tx_hash, last_error, created_at, updated_at"
)
_EVENT_COLS = "token_id, investor, share_percent, invested_amount, ts, block_number, tx_hash"


class SQLiteSubmissionStore(SubmissionStore):
    """
    Durable single-file store. Thread-safe via per-thread connection and a
    coarse process lock around write transactions, which also serializes
    same-key upserts from concurrent coroutines (last write wins).
    """

    def __init__(self, path: Optional[str] = None):
        # default path: $FRS_DB_PATH or local file "frs.db"
        self._path = path or os.environ.get("FRS_DB_PATH", "frs.db")
        self._lock = threading.RLock()
        self._local = threading.local()
        self._migrate()

    @property
    def path(self) -> str:
        return self._path

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StoreError(f"cannot open store at {self._path}: {e}") from e
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        self._local.conn = conn
        return conn

    def _migrate(self) -> None:
        conn = self._get_conn()
        with self._lock:
            ver = conn.execute("PRAGMA user_version").fetchone()[0]
            if ver == 0:
                conn.executescript(_SCHEMA_V1)
                conn.execute("PRAGMA user_version=1")
                ver = 1
            if ver < 2:
                conn.executescript(_SCHEMA_V2)
                conn.execute("PRAGMA user_version=2")

    @contextmanager
    def _txn(self):
        t0 = time.perf_counter()
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StoreError(f"store transaction failed: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            _TX_LAT.observe(time.perf_counter() - t0)

    # ----- row mapping -----

    @staticmethod
    def _row_to_settlement(row) -> SettlementRecord:
        (
            rid,
            asset_id,
            period,
            income_amount,
            investor_share,
            owner_share,
            status,
            proof_id,
            commitment,
            tx_hash,
            last_error,
            created_at,
            updated_at,
        ) = row
        return SettlementRecord(
            id=rid,
            asset_id=int(asset_id),
            period=str(period),
            income_amount=int(income_amount),
            investor_share=int(investor_share),
            owner_share=int(owner_share),
            status=SettlementStatus(status),
            proof_id=proof_id,
            commitment=commitment,
            tx_hash=tx_hash,
            last_error=last_error,
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def _row_to_event(row) -> ChainEvent:
        token_id, investor, share, amount, ts, block_number, tx_hash = row
        return ChainEvent(
            token_id=token_id,
            investor=investor,
            share_percent=share,
            invested_amount=amount,
            timestamp=int(ts),
            block_number=int(block_number) if block_number is not None else None,
            tx_hash=tx_hash,
        )

    # ----- Settlements -----

    def upsert_settlement(self, rec: SettlementRecord) -> SettlementRecord:
        """
        Insert-or-replace by id. created_at of an existing row is kept;
        updated_at is stamped on every write. Returns the stored record.
        """
        rec.check_invariants()
        now = utc_now_iso()
        with self._lock, self._txn() as conn:
            conn.execute(
                f"INSERT INTO settlements({_SETTLEMENT_COLS}) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "asset_id=excluded.asset_id, period=excluded.period, "
                "income_amount=excluded.income_amount, investor_share=excluded.investor_share, "
                "owner_share=excluded.owner_share, status=excluded.status, "
                "proof_id=excluded.proof_id, commitment=excluded.commitment, "
                "tx_hash=excluded.tx_hash, last_error=excluded.last_error, "
                "updated_at=excluded.updated_at",
                (
                    rec.id,
                    int(rec.asset_id),
                    str(rec.period),
                    int(rec.income_amount),
                    int(rec.investor_share),
                    int(rec.owner_share),
                    rec.status.value,
                    rec.proof_id,
                    rec.commitment,
                    rec.tx_hash,
                    rec.last_error,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                f"SELECT {_SETTLEMENT_COLS} FROM settlements WHERE id=?", (rec.id,)
            ).fetchone()
        _SETTLEMENT_WRITES.labels(status=rec.status.value).inc()
        return self._row_to_settlement(row)

    def get_settlement(self, row_id: str) -> Optional[SettlementRecord]:
        conn = self._get_conn()
        row = conn.execute(
            f"SELECT {_SETTLEMENT_COLS} FROM settlements WHERE id=?", (row_id,)
        ).fetchone()
        return self._row_to_settlement(row) if row else None

    def list_settlements(
        self, *, statuses: Optional[Iterable[SettlementStatus]] = None
    ) -> List[SettlementRecord]:
        conn = self._get_conn()
        if statuses is None:
            cur = conn.execute(
                f"SELECT {_SETTLEMENT_COLS} FROM settlements ORDER BY created_at ASC, id ASC"
            )
        else:
            wanted = [SettlementStatus(s).value for s in statuses]
            if not wanted:
                return []
            marks = ",".join("?" for _ in wanted)
            cur = conn.execute(
                f"SELECT {_SETTLEMENT_COLS} FROM settlements WHERE status IN ({marks}) "
                "ORDER BY created_at ASC, id ASC",
                wanted,
            )
        return [self._row_to_settlement(r) for r in cur.fetchall()]

    # ----- Chain events -----

    def upsert_chain_event(self, evt: ChainEvent) -> UpsertOutcome:
        """
        Atomic transaction:
          - SELECT current row for (token_id, lower(investor))
          - identical → no write (UNCHANGED)
          - otherwise INSERT ... ON CONFLICT DO UPDATE (last write wins)
        """
        token_id, investor_key = evt.key
        with self._lock, self._txn() as conn:
            row = conn.execute(
                f"SELECT {_EVENT_COLS} FROM chain_events WHERE token_id=? AND investor_key=?",
                (token_id, investor_key),
            ).fetchone()
            if row is not None and self._row_to_event(row) == evt:
                outcome = UpsertOutcome.UNCHANGED
            else:
                conn.execute(
                    "INSERT INTO chain_events(token_id, investor_key, investor, share_percent, "
                    "invested_amount, ts, block_number, tx_hash) VALUES(?,?,?,?,?,?,?,?) "
                    "ON CONFLICT(token_id, investor_key) DO UPDATE SET "
                    "investor=excluded.investor, share_percent=excluded.share_percent, "
                    "invested_amount=excluded.invested_amount, ts=excluded.ts, "
                    "block_number=excluded.block_number, tx_hash=excluded.tx_hash",
                    (
                        token_id,
                        investor_key,
                        evt.investor,
                        evt.share_percent,
                        evt.invested_amount,
                        int(evt.timestamp),
                        evt.block_number,
                        evt.tx_hash,
                    ),
                )
                outcome = UpsertOutcome.INSERTED if row is None else UpsertOutcome.UPDATED
        _EVENT_UPSERTS.labels(outcome=outcome.value).inc()
        return outcome

    def get_chain_event(self, token_id: str, investor: str) -> Optional[ChainEvent]:
        conn = self._get_conn()
        row = conn.execute(
            f"SELECT {_EVENT_COLS} FROM chain_events WHERE token_id=? AND investor_key=?",
            (str(token_id), investor.lower()),
        ).fetchone()
        return self._row_to_event(row) if row else None

    def list_chain_events(
        self, *, token_id: Optional[str] = None, investor: Optional[str] = None
    ) -> List[ChainEvent]:
        clauses = []
        args: list = []
        if token_id is not None:
            clauses.append("token_id=?")
            args.append(str(token_id))
        if investor is not None:
            clauses.append("investor_key=?")
            args.append(investor.lower())
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        conn = self._get_conn()
        cur = conn.execute(
            f"SELECT {_EVENT_COLS} FROM chain_events {where}ORDER BY ts ASC, token_id ASC, investor_key ASC",
            args,
        )
        return [self._row_to_event(r) for r in cur.fetchall()]

    def delete_chain_event(self, token_id: str, investor: str) -> int:
        with self._lock, self._txn() as conn:
            cur = conn.execute(
                "DELETE FROM chain_events WHERE token_id=? AND investor_key=?",
                (str(token_id), investor.lower()),
            )
            n = int(cur.rowcount)
        _EVENT_DELETES.inc(n)
        return n

    def delete_chain_events_for_token(self, token_id: str) -> int:
        with self._lock, self._txn() as conn:
            cur = conn.execute("DELETE FROM chain_events WHERE token_id=?", (str(token_id),))
            n = int(cur.rowcount)
        _EVENT_DELETES.inc(n)
        return n

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


__all__ = [
    "SettlementStatus",
    "SettlementRecord",
    "ChainEvent",
    "UpsertOutcome",
    "SubmissionStore",
    "SQLiteSubmissionStore",
]
