# FILE: frs/chain_web3.py
from __future__ import annotations

"""
web3.py implementation of the ledger gateway.

  - reads / writes / historical logs: AsyncWeb3 over HTTP
  - writes are signed with the configured private key, or sent from the
    node's first unlocked account (local Hardhat node) when no key is set
  - live logs: `eth_subscribe("logs")` over WebSocket when a ws_url is
    configured, else polling `eth_getLogs` on new blocks

Every failure surfaces as LedgerError.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, List, Mapping, Optional, Sequence

from prometheus_client import Counter, Histogram
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from .chain import BlockId, ContractRef, EventHandler, RawEvent, TxReceipt
from .errors import LedgerError
from .utils import hex_str

_log = logging.getLogger(__name__)

_RPC_ERRORS = Counter(
    "frs_ledger_errors_total",
    "Ledger call failures",
    ["op"],  # read|send|logs|subscribe
)
_TX_LAT = Histogram(
    "frs_ledger_tx_seconds",
    "Send-to-confirmation latency (seconds)",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)

_BLOCK_TS_CACHE = 4096


def _event_signature(contract: ContractRef, event_name: str) -> str:
    for item in contract.abi:
        if item.get("type") == "event" and item.get("name") == event_name:
            types = ",".join(str(i.get("type")) for i in item.get("inputs", ()))
            return f"{event_name}({types})"
    raise LedgerError(f"{contract.name} ABI has no event {event_name}")


class _PollingSubscription:
    """
    Background task feeding a handler. `running` goes False once the task
    ends for any reason other than unsubscribe(); the cause is kept in `error`.
    """

    transport = "polling"

    def __init__(self, task: "asyncio.Task[None]"):
        self._task = task
        self.error: Optional[BaseException] = None
        task.add_done_callback(self._on_done)

    @property
    def running(self) -> bool:
        return not self._task.done()

    def _on_done(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        self.error = task.exception()
        _RPC_ERRORS.labels(op="subscribe").inc()
        if self.error is None:
            _log.error("%s log subscription ended", self.transport)
        else:
            _log.error(
                "%s log subscription died: %s", self.transport, self.error,
                exc_info=self.error,
            )

    async def unsubscribe(self) -> None:
        # a dead task was already reported by _on_done
        if self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class _WsSubscription(_PollingSubscription):
    transport = "ws"

    def __init__(self, w3: AsyncWeb3, sub_id: str, task: "asyncio.Task[None]"):
        super().__init__(task)
        self._w3 = w3
        self._sub_id = sub_id

    async def unsubscribe(self) -> None:
        await super().unsubscribe()
        try:
            await self._w3.eth.unsubscribe(self._sub_id)
        finally:
            await self._w3.provider.disconnect()


class Web3Ledger:
    def __init__(
        self,
        rpc_url: str,
        *,
        ws_url: str = "",
        private_key: str = "",
        tx_timeout_s: float = 120.0,
        poll_interval_s: float = 4.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.tx_timeout_s = float(tx_timeout_s)
        self.poll_interval_s = float(poll_interval_s)
        self.w3 = w3 if w3 is not None else AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._account = self.w3.eth.account.from_key(private_key) if private_key else None
        self._send_lock = asyncio.Lock()
        self._block_ts: "OrderedDict[int, int]" = OrderedDict()

    @classmethod
    def from_settings(cls, settings) -> "Web3Ledger":
        return cls(
            settings.rpc_url,
            ws_url=settings.ws_url,
            private_key=settings.private_key,
            tx_timeout_s=settings.tx_timeout_s,
        )

    def _bind(self, contract: ContractRef, w3: Optional[AsyncWeb3] = None):
        w3 = w3 or self.w3
        if not contract.address:
            raise LedgerError(f"{contract.name}: no contract address configured")
        return w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract.address),
            abi=list(contract.abi),
        )

    # ----- capability probe -----

    def has_method(self, contract: ContractRef, name: str) -> bool:
        return contract.has_function(name)

    # ----- reads / writes -----

    async def call_read(self, contract: ContractRef, method: str, args: Sequence[Any] = ()) -> Any:
        try:
            fn = getattr(self._bind(contract).functions, method)
            return await fn(*args).call()
        except LedgerError:
            raise
        except Exception as e:
            _RPC_ERRORS.labels(op="read").inc()
            raise LedgerError(f"{contract.name}.{method} call failed: {e}") from e

    async def _sender(self) -> str:
        if self._account is not None:
            return self._account.address
        accounts = await self.w3.eth.accounts
        if not accounts:
            raise LedgerError("no private key configured and the node exposes no accounts")
        return accounts[0]

    async def send_tx(self, contract: ContractRef, method: str, args: Sequence[Any] = ()) -> TxReceipt:
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        try:
            fn = getattr(self._bind(contract).functions, method)(*args)
            # one in-flight send per process keeps nonces ordered
            async with self._send_lock:
                sender = await self._sender()
                if self._account is not None:
                    tx = await fn.build_transaction(
                        {
                            "from": sender,
                            "nonce": await self.w3.eth.get_transaction_count(sender, "pending"),
                        }
                    )
                    signed = self._account.sign_transaction(tx)
                    tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
                else:
                    tx_hash = await fn.transact({"from": sender})
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.tx_timeout_s
            )
        except LedgerError:
            raise
        except Exception as e:
            _RPC_ERRORS.labels(op="send").inc()
            raise LedgerError(f"{contract.name}.{method} transaction failed: {e}") from e
        finally:
            _TX_LAT.observe(loop.time() - t0)

        h = AsyncWeb3.to_hex(receipt["transactionHash"])
        if int(receipt.get("status", 0)) != 1:
            _RPC_ERRORS.labels(op="send").inc()
            raise LedgerError(f"{contract.name}.{method} reverted in tx {h}")
        _log.info(
            "ledger tx confirmed",
            extra={"tx_hash": h, "block_number": receipt.get("blockNumber"), "path": method},
        )
        return TxReceipt(
            tx_hash=h,
            confirmations=1,
            block_number=receipt.get("blockNumber"),
            status=1,
        )

    # ----- events -----

    async def _block_timestamp(self, block_number: Optional[int]) -> Optional[int]:
        if block_number is None:
            return None
        ts = self._block_ts.get(block_number)
        if ts is None:
            block = await self.w3.eth.get_block(block_number)
            ts = int(block["timestamp"])
            self._block_ts[block_number] = ts
            while len(self._block_ts) > _BLOCK_TS_CACHE:
                self._block_ts.popitem(last=False)
        return ts

    async def _to_raw(self, log: Mapping[str, Any], *, with_timestamp: bool) -> RawEvent:
        block_number = log.get("blockNumber")
        return RawEvent(
            event=str(log.get("event")),
            args=dict(log.get("args") or {}),
            block_number=int(block_number) if block_number is not None else None,
            tx_hash=hex_str(log.get("transactionHash")),
            log_index=log.get("logIndex"),
            timestamp=await self._block_timestamp(block_number) if with_timestamp else None,
        )

    async def query_past_events(
        self,
        contract: ContractRef,
        event_name: str,
        from_block: BlockId = 0,
        to_block: BlockId = "latest",
        argument_filters: Optional[Mapping[str, Any]] = None,
    ) -> List[RawEvent]:
        try:
            event = getattr(self._bind(contract).events, event_name)
            logs = await event.get_logs(
                from_block=from_block,
                to_block=to_block,
                argument_filters=dict(argument_filters) if argument_filters else None,
            )
            return [await self._to_raw(log, with_timestamp=True) for log in logs]
        except LedgerError:
            raise
        except Exception as e:
            _RPC_ERRORS.labels(op="logs").inc()
            raise LedgerError(f"{contract.name}.{event_name} log query failed: {e}") from e

    async def subscribe(self, contract: ContractRef, event_name: str, handler: EventHandler):
        if self.ws_url:
            return await self._subscribe_ws(contract, event_name, handler)
        return await self._subscribe_polling(contract, event_name, handler)

    async def _subscribe_ws(self, contract: ContractRef, event_name: str, handler: EventHandler):
        try:
            w3 = await AsyncWeb3(WebSocketProvider(self.ws_url))
            bound = self._bind(contract, w3)
            topic = AsyncWeb3.to_hex(AsyncWeb3.keccak(text=_event_signature(contract, event_name)))
            sub_id = await w3.eth.subscribe(
                "logs", {"address": bound.address, "topics": [topic]}
            )
        except LedgerError:
            raise
        except Exception as e:
            _RPC_ERRORS.labels(op="subscribe").inc()
            raise LedgerError(f"cannot subscribe to {contract.name}.{event_name}: {e}") from e

        event = getattr(bound.events, event_name)

        async def _pump() -> None:
            async for payload in w3.socket.process_subscriptions():
                result = payload.get("result")
                if not result:
                    continue
                try:
                    decoded = event().process_log(result)
                except Exception:
                    _RPC_ERRORS.labels(op="subscribe").inc()
                    _log.warning("undecodable %s log dropped", event_name, exc_info=True)
                    continue
                handler(await self._to_raw(decoded, with_timestamp=False))

        task = asyncio.get_running_loop().create_task(_pump())
        _log.info("ws log subscription open", extra={"contract": contract.name, "sub_id": str(sub_id)})
        return _WsSubscription(w3, sub_id, task)

    async def _subscribe_polling(self, contract: ContractRef, event_name: str, handler: EventHandler):
        try:
            event = getattr(self._bind(contract).events, event_name)
            next_block = int(await self.w3.eth.block_number) + 1
        except LedgerError:
            raise
        except Exception as e:
            _RPC_ERRORS.labels(op="subscribe").inc()
            raise LedgerError(f"cannot subscribe to {contract.name}.{event_name}: {e}") from e

        async def _poll() -> None:
            nonlocal next_block
            while True:
                await asyncio.sleep(self.poll_interval_s)
                try:
                    head = int(await self.w3.eth.block_number)
                    if head < next_block:
                        continue
                    logs = await event.get_logs(from_block=next_block, to_block=head)
                except Exception:
                    # next tick retries the same range
                    _RPC_ERRORS.labels(op="logs").inc()
                    _log.warning("log poll failed", exc_info=True)
                    continue
                next_block = head + 1
                for log in logs:
                    handler(await self._to_raw(log, with_timestamp=False))

        task = asyncio.get_running_loop().create_task(_poll())
        _log.info("polling log subscription open", extra={"contract": contract.name})
        return _PollingSubscription(task)


__all__ = ["Web3Ledger"]
