# FILE: frs/runtime.py
from __future__ import annotations

"""
Process wiring and startup routine.

    python -m frs.runtime

Startup order: logging → metrics server → fail interrupted submissions →
initial historical sync (non-fatal) → live subscription → wait.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from prometheus_client import start_http_server

from .chain import ContractRef
from .compute_client import ComputeClient
from .config import Settings, load_settings
from .errors import FRSError
from .logging import configure_json_logging
from .service import SettlementService
from .settlement import SettlementOrchestrator
from .store import SQLiteSubmissionStore
from .sync import ChainEventSynchronizer, LiveSubscription

_log = logging.getLogger(__name__)

# one standalone /metrics server per process
_METRICS_SERVER_STARTED = False
_METRICS_SERVER_LOCK = threading.Lock()


def ensure_metrics_server(settings: Settings) -> bool:
    """Start the Prometheus HTTP server once; returns True if it is running."""
    global _METRICS_SERVER_STARTED
    if not settings.prom_http_enable or settings.prometheus_port <= 0:
        return False
    if _METRICS_SERVER_STARTED:
        return True
    with _METRICS_SERVER_LOCK:
        if _METRICS_SERVER_STARTED:
            return True
        start_http_server(settings.prometheus_port)
        _METRICS_SERVER_STARTED = True
    _log.info("metrics server listening", extra={"port": settings.prometheus_port})
    return True


def _contract(name: str, address: str, abi_path: str) -> Optional[ContractRef]:
    if not address:
        return None
    return ContractRef.load(name, address, abi_path)


@dataclass
class Components:
    settings: Settings
    store: SQLiteSubmissionStore
    compute: ComputeClient
    ledger: object
    orchestrator: SettlementOrchestrator
    synchronizer: Optional[ChainEventSynchronizer]
    service: SettlementService

    async def aclose(self) -> None:
        await self.compute.aclose()
        self.store.close()


def build_components(settings: Settings, *, ledger=None) -> Components:
    """
    Wire store, compute client, ledger, orchestrator, synchronizer and
    service. `ledger` defaults to a Web3Ledger built from settings.
    """
    if ledger is None:
        from .chain_web3 import Web3Ledger

        ledger = Web3Ledger.from_settings(settings)

    store = SQLiteSubmissionStore(settings.db_path)
    compute = ComputeClient.from_settings(settings)
    orchestrator = SettlementOrchestrator(
        store,
        compute,
        ledger,
        program=settings.compute_program,
        payout_contract=_contract("PayoutManager", settings.payout_contract_address, settings.payout_abi_path),
        oracle_contract=_contract(
            "OracleVerification", settings.oracle_contract_address, settings.oracle_abi_path
        ),
        max_attempts=settings.retry_max_attempts,
        base_delay_s=settings.retry_base_delay_s,
    )
    investment = _contract(
        "InvestmentRegistry", settings.investment_contract_address, settings.investment_abi_path
    )
    synchronizer = ChainEventSynchronizer(store, ledger, investment) if investment else None
    service = SettlementService(orchestrator, synchronizer)
    return Components(
        settings=settings,
        store=store,
        compute=compute,
        ledger=ledger,
        orchestrator=orchestrator,
        synchronizer=synchronizer,
        service=service,
    )


async def start(components: Components) -> Optional[LiveSubscription]:
    """
    Startup sweep + initial sync + live subscription. The initial sync may
    fail (ledger down) without stopping the process.
    """
    components.orchestrator.fail_interrupted("process restarted before completion")

    sync = components.synchronizer
    if sync is None:
        _log.warning("no investment contract configured; chain sync disabled")
        return None
    try:
        await sync.sync_history()
    except FRSError:
        _log.exception("initial historical sync failed")
    return await sync.start_live()


async def _serve(settings: Settings) -> None:
    components = build_components(settings)
    live = None
    try:
        live = await start(components)
        # run until cancelled
        await asyncio.Event().wait()
    finally:
        if live is not None:
            await live.stop()
        await components.aclose()


def run(settings: Optional[Settings] = None) -> None:
    settings = settings or load_settings()
    configure_json_logging(settings.log_level)
    _log.info(
        "starting %s",
        settings.app_name,
        extra={"config_hash": settings.config_hash(), "config_origin": settings.config_origin},
    )
    ensure_metrics_server(settings)
    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        _log.info("shutdown requested")


if __name__ == "__main__":
    run()
