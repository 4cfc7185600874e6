# FILE: frs/chain.py
from __future__ import annotations

"""
Ledger boundary: value types and the gateway protocol.

Components talk to the chain only through `LedgerGateway`; the web3
implementation lives in `frs.chain_web3` and is wired in by the runtime.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from .errors import LedgerError

BlockId = Union[int, str]  # block number or "latest"


@dataclass(frozen=True)
class ContractRef:
    """A deployed contract: address bound to its ABI."""

    name: str
    address: str
    abi: Sequence[Mapping[str, Any]] = field(default_factory=tuple)

    @classmethod
    def load(cls, name: str, address: str, abi_path: str) -> "ContractRef":
        return cls(name=name, address=address, abi=tuple(load_abi(abi_path)))

    def has_function(self, fn_name: str) -> bool:
        return any(
            item.get("type") == "function" and item.get("name") == fn_name
            for item in self.abi
        )


def load_abi(path: str) -> List[Dict[str, Any]]:
    """
    Read an ABI from a Hardhat/Truffle artifact (`{"abi": [...]}`) or a bare
    ABI list. Raises LedgerError when the file is missing or has neither.
    """
    if not path or not os.path.exists(path):
        raise LedgerError(f"ABI file not found: {path!r}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except (OSError, ValueError) as e:
        raise LedgerError(f"cannot read ABI {path!r}: {e}") from e
    if isinstance(doc, dict):
        doc = doc.get("abi")
    if not isinstance(doc, list):
        raise LedgerError(f"{path!r} holds no ABI list")
    return [item for item in doc if isinstance(item, dict)]


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    confirmations: int = 1
    block_number: Optional[int] = None
    status: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "confirmations": self.confirmations,
            "blockNumber": self.block_number,
            "status": self.status,
        }


@dataclass(frozen=True)
class RawEvent:
    """
    A decoded contract log.

    `timestamp` is the block time in unix seconds when the ledger supplied
    it; None means the consumer should use the observation time.
    """

    event: str
    args: Mapping[str, Any]
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    log_index: Optional[int] = None
    timestamp: Optional[int] = None


EventHandler = Callable[[RawEvent], None]


class Subscription(Protocol):
    async def unsubscribe(self) -> None: ...


class LedgerGateway(Protocol):
    async def call_read(self, contract: ContractRef, method: str, args: Sequence[Any] = ()) -> Any: ...

    async def send_tx(self, contract: ContractRef, method: str, args: Sequence[Any] = ()) -> TxReceipt:
        """Send and wait for confirmation; raises LedgerError (incl. reverts)."""
        ...

    def has_method(self, contract: ContractRef, name: str) -> bool: ...

    async def subscribe(
        self, contract: ContractRef, event_name: str, handler: EventHandler
    ) -> Subscription:
        """`handler` must not block; it is invoked once per decoded log."""
        ...

    async def query_past_events(
        self,
        contract: ContractRef,
        event_name: str,
        from_block: BlockId = 0,
        to_block: BlockId = "latest",
        argument_filters: Optional[Mapping[str, Any]] = None,
    ) -> List[RawEvent]: ...


__all__ = [
    "BlockId",
    "ContractRef",
    "load_abi",
    "TxReceipt",
    "RawEvent",
    "EventHandler",
    "Subscription",
    "LedgerGateway",
]
