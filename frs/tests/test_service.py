# frs/tests/test_service.py
import asyncio

import pytest

from frs.errors import ValidationError
from frs.service import SettlementService
from frs.settlement import SettlementOrchestrator
from frs.sync import ChainEventSynchronizer

ALICE = "0xA11CE00000000000000000000000000000000001"


@pytest.fixture
def service_for(store, ledger, payout_contract, oracle_contract, registry_contract):
    def build(compute, *, with_sync=True):
        orch = SettlementOrchestrator(
            store,
            compute,
            ledger,
            payout_contract=payout_contract,
            oracle_contract=oracle_contract,
        )
        sync = ChainEventSynchronizer(store, ledger, registry_contract) if with_sync else None
        return SettlementService(orch, sync)

    return build


def test_submit_income_and_get(service_for, make_compute, make_valid_response):
    svc = service_for(make_compute(make_valid_response()))
    body = {"assetId": 3, "period": "2026-02", "incomeAmount": 10, "investorShare": 6, "ownerShare": 4}

    out = asyncio.run(svc.submit_income(body))

    assert out["ok"] is True
    assert out["rowId"] == "3:2026-02"
    assert out["receipt"]["txHash"].startswith("0x")
    sub = svc.get_submission("3:2026-02")
    assert sub["status"] == "PROOF_SUBMITTED"
    assert sub["txHash"] == out["receipt"]["txHash"]
    assert svc.get_submission("missing") is None


def test_submit_income_rejects_non_object(service_for, make_compute):
    svc = service_for(make_compute())
    with pytest.raises(ValidationError):
        asyncio.run(svc.submit_income(["x"]))


def test_submit_income_body_keys_make_distinct_rows(service_for, make_compute, make_valid_response, store):
    svc = service_for(make_compute(make_valid_response(), make_valid_response()))
    body = {"assetId": 3, "period": "2026-02", "incomeAmount": 10, "investorShare": 6, "ownerShare": 4}

    a = asyncio.run(svc.submit_income(dict(body, idempotencyKey="key-A")))
    b = asyncio.run(svc.submit_income(dict(body, idempotencyKey="key-B")))

    assert (a["rowId"], b["rowId"]) == ("key-A", "key-B")
    assert len(store.list_settlements()) == 2
    assert svc.get_submission("3:2026-02") is None


def test_admin_sync_list_delete(service_for, make_compute, ledger, make_investment):
    svc = service_for(make_compute())
    ledger.events = [make_investment(5, ALICE, 10, 1000, ts=1)]

    assert asyncio.run(svc.trigger_sync()) == {"ok": True, "scanned": 1, "added": 1}
    listed = svc.list_investments()
    assert listed == [
        {
            "tokenId": "5",
            "investor": ALICE,
            "sharePercent": "10",
            "investedAmount": "1000",
            "timestamp": 1,
            "blockNumber": None,
            "txHash": None,
        }
    ]
    assert svc.delete_investment({"tokenId": "5", "investor": ALICE}) == {"ok": True, "deleted": 1}
    assert svc.list_investments() == []


def test_delete_requires_both_keys(service_for, make_compute):
    svc = service_for(make_compute())
    with pytest.raises(ValidationError) as ei:
        svc.delete_investment({"tokenId": "5"})
    assert ei.value.fields == ("investor",)
    with pytest.raises(ValidationError):
        svc.delete_investment(None)


def test_trigger_resync(service_for, make_compute, ledger, make_investment):
    svc = service_for(make_compute())
    ledger.events = [make_investment(5, ALICE, 10, 1000, ts=1)]
    out = asyncio.run(svc.trigger_resync({"tokenId": 5}))
    assert out == {"ok": True, "scanned": 1, "added": 1, "cleared": 0}
    with pytest.raises(ValidationError):
        asyncio.run(svc.trigger_resync({}))


def test_admin_without_investment_contract(service_for, make_compute):
    svc = service_for(make_compute(), with_sync=False)
    with pytest.raises(ValidationError):
        svc.list_investments()
