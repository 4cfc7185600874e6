# FILE: frs/sync.py
from __future__ import annotations

"""
Chain event synchronizer (CDC from the investment registry into the store).

Sources:
  - history: `query_past_events` over a block range, applied in order
  - live:    ledger subscription; the handler only enqueues, a consumer
             task upserts each event on its own

Both converge on the same store rows since ChainEvent upserts are keyed by
(token_id, lower(investor)). Ledger and mapping failures propagate to the
caller; only the live consumer logs and continues.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter, Gauge

from .chain import BlockId, ContractRef, LedgerGateway, RawEvent, Subscription
from .errors import MalformedEventError, ValidationError
from .store import ChainEvent, SubmissionStore
from .utils import hex_str, uint_str, unix_now

_log = logging.getLogger(__name__)

INVESTMENT_EVENT = "InvestmentCreated"

# ---------- Metrics ----------

_EVENTS = Counter(
    "frs_sync_events_total",
    "Chain events applied to the store",
    ["source", "outcome"],  # source=history|live, outcome=inserted|updated|unchanged|failed
)
_LIVE_QUEUE = Gauge(
    "frs_sync_live_queue_depth",
    "Live events waiting to be applied",
)


def _matches(evt: ChainEvent, token_id: Optional[str], investor: Optional[str]) -> bool:
    if token_id is not None and evt.token_id != token_id:
        return False
    if investor is not None and evt.investor.lower() != investor.lower():
        return False
    return True


class LiveSubscription:
    """Handle on a running live subscription (listener + consumer task)."""

    def __init__(self) -> None:
        self.queue: "asyncio.Queue[Tuple[RawEvent, int]]" = asyncio.Queue()
        self.applied = 0
        self.failed = 0
        self._subscription: Optional[Subscription] = None
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        """Consumer task alive and the ledger transport not reported dead."""
        if self._task is None or self._task.done():
            return False
        return bool(getattr(self._subscription, "running", True))

    async def drain(self) -> None:
        """Wait until every event enqueued so far has been applied."""
        await self.queue.join()

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class ChainEventSynchronizer:
    def __init__(
        self,
        store: SubmissionStore,
        ledger: LedgerGateway,
        contract: ContractRef,
        *,
        clock: Callable[[], int] = unix_now,
    ):
        self._store = store
        self._ledger = ledger
        self.contract = contract
        self._clock = clock

    # ----- mapping -----

    def to_chain_event(self, raw: RawEvent, *, observed_at: Optional[int] = None) -> ChainEvent:
        """
        Map a decoded InvestmentCreated log to a ChainEvent.

        Timestamp: block time when the ledger supplied one, else the
        observation time.
        """
        args = raw.args or {}
        try:
            investor = str(args["investor"]).strip()
            token_id = uint_str(args["tokenId"])
            share = uint_str(args["sharePercent"])
            amount = uint_str(args["investedAmount"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedEventError(
                f"malformed {raw.event} event in tx {raw.tx_hash}: {e}"
            ) from e
        if not investor:
            raise MalformedEventError(f"{raw.event} event in tx {raw.tx_hash} has no investor")
        if raw.timestamp is not None:
            ts = int(raw.timestamp)
        else:
            ts = int(observed_at if observed_at is not None else self._clock())
        return ChainEvent(
            token_id=token_id,
            investor=investor,
            share_percent=share,
            invested_amount=amount,
            timestamp=ts,
            block_number=raw.block_number,
            tx_hash=hex_str(raw.tx_hash),
        )

    def _apply(
        self,
        events: Iterable[RawEvent],
        *,
        token_id: Optional[str] = None,
        investor: Optional[str] = None,
    ) -> Dict[str, int]:
        observed = self._clock()
        scanned = 0
        added = 0
        for raw in events:
            scanned += 1
            evt = self.to_chain_event(raw, observed_at=observed)
            if not _matches(evt, token_id, investor):
                continue
            outcome = self._store.upsert_chain_event(evt)
            _EVENTS.labels(source="history", outcome=outcome.value).inc()
            if outcome.changed:
                added += 1
        return {"scanned": scanned, "added": added}

    # ----- history -----

    async def sync_history(self, from_block: BlockId = 0, to_block: BlockId = "latest") -> Dict[str, int]:
        events = await self._ledger.query_past_events(
            self.contract, INVESTMENT_EVENT, from_block, to_block
        )
        result = self._apply(events)
        _log.info(
            "historical sync done",
            extra={"scanned": result["scanned"], "added": result["added"]},
        )
        return result

    async def resync(self, token_id: Any = None, investor: Optional[str] = None) -> Dict[str, int]:
        """
        Targeted correction:
          - token + investor: clear that key, re-scan filtered by investor
          - token only:       clear every record of the token, re-scan all
          - investor only:    no clear, re-scan filtered by investor
        """
        investor = (investor or "").strip() or None
        if token_id is None or token_id == "":
            token = None
        else:
            try:
                token = uint_str(token_id)
            except ValueError as e:
                raise ValidationError(f"invalid tokenId {token_id!r}", ["tokenId"]) from e
        if token is None and investor is None:
            raise ValidationError("resync needs tokenId and/or investor", ["tokenId", "investor"])

        cleared = 0
        if token is not None and investor is not None:
            cleared = self._store.delete_chain_event(token, investor)
        elif token is not None:
            cleared = self._store.delete_chain_events_for_token(token)

        filters = {"investor": investor} if investor is not None else None
        events = await self._ledger.query_past_events(
            self.contract, INVESTMENT_EVENT, 0, "latest", argument_filters=filters
        )
        result = self._apply(events, token_id=token, investor=investor)
        result["cleared"] = cleared
        _log.info(
            "resync done",
            extra={"token_id": token, "investor": investor, **result},
        )
        return result

    # ----- live -----

    async def start_live(self) -> LiveSubscription:
        live = LiveSubscription()

        def _on_event(raw: RawEvent) -> None:
            live.queue.put_nowait((raw, self._clock()))
            _LIVE_QUEUE.set(live.queue.qsize())

        live._task = asyncio.get_running_loop().create_task(self._consume(live))
        try:
            live._subscription = await self._ledger.subscribe(
                self.contract, INVESTMENT_EVENT, _on_event
            )
        except BaseException:
            await live.stop()
            raise
        _log.info("live subscription started", extra={"contract": self.contract.address})
        return live

    async def _consume(self, live: LiveSubscription) -> None:
        queue = live.queue
        while True:
            raw, observed = await queue.get()
            try:
                evt = self.to_chain_event(raw, observed_at=observed)
                outcome = self._store.upsert_chain_event(evt)
            except Exception:
                _EVENTS.labels(source="live", outcome="failed").inc()
                live.failed += 1
                _log.exception(
                    "live event not applied",
                    extra={"tx_hash": hex_str(raw.tx_hash), "block_number": raw.block_number},
                )
            else:
                _EVENTS.labels(source="live", outcome=outcome.value).inc()
                live.applied += 1
                _log.info(
                    "live event applied",
                    extra={"token_id": evt.token_id, "investor": evt.investor, "status": outcome.value},
                )
            finally:
                queue.task_done()
                _LIVE_QUEUE.set(queue.qsize())

    # ----- admin -----

    def delete(self, token_id: Any, investor: str) -> int:
        if token_id is None or token_id == "" or not investor:
            raise ValidationError("tokenId and investor are required", ["tokenId", "investor"])
        try:
            token = uint_str(token_id)
        except ValueError as e:
            raise ValidationError(f"invalid tokenId {token_id!r}", ["tokenId"]) from e
        return self._store.delete_chain_event(token, investor)

    def list_events(self, *, token_id: Any = None, investor: Optional[str] = None) -> List[ChainEvent]:
        token = uint_str(token_id) if token_id is not None else None
        return self._store.list_chain_events(token_id=token, investor=investor)


__all__ = [
    "INVESTMENT_EVENT",
    "LiveSubscription",
    "ChainEventSynchronizer",
]
