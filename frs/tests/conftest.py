# frs/tests/conftest.py
import pytest

from frs.chain import ContractRef, RawEvent, TxReceipt
from frs.store import SQLiteSubmissionStore

PAYOUT_ABI = [
    {
        "type": "function",
        "name": "submitProofAndPayout",
        "inputs": [
            {"name": "assetId", "type": "uint256"},
            {"name": "period", "type": "string"},
            {"name": "proof", "type": "bytes"},
            {"name": "publicOutputs", "type": "bytes32[]"},
        ],
        "outputs": [],
    }
]
ORACLE_ABI = [
    {
        "type": "function",
        "name": "verifyIncome",
        "inputs": [
            {"name": "assetId", "type": "uint256"},
            {"name": "income", "type": "uint256"},
            {"name": "period", "type": "uint256"},
            {"name": "proof", "type": "string"},
        ],
        "outputs": [],
    }
]
REGISTRY_ABI = [
    {
        "type": "event",
        "name": "InvestmentCreated",
        "anonymous": False,
        "inputs": [
            {"name": "investor", "type": "address", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": False},
            {"name": "sharePercent", "type": "uint256", "indexed": False},
            {"name": "investedAmount", "type": "uint256", "indexed": False},
        ],
    }
]


class FakeSubscription:
    running = True

    def __init__(self, ledger, handler):
        self._ledger = ledger
        self._handler = handler

    async def unsubscribe(self):
        if self._handler in self._ledger.handlers:
            self._ledger.handlers.remove(self._handler)


class FakeLedger:
    """In-memory ledger: canned events, recorded sends, manual live emits."""

    def __init__(self):
        self.events = []
        self.sent = []
        self.queries = []
        self.handlers = []
        self.send_error = None
        self.query_error = None
        self.revert = False
        self._tx = 0

    def has_method(self, contract, name):
        return contract.has_function(name)

    async def call_read(self, contract, method, args=()):
        return None

    async def send_tx(self, contract, method, args=()):
        self.sent.append((contract.name, method, list(args)))
        if self.send_error is not None:
            raise self.send_error
        self._tx += 1
        return TxReceipt(
            tx_hash="0x%064x" % self._tx,
            block_number=100 + self._tx,
            status=0 if self.revert else 1,
        )

    async def subscribe(self, contract, event_name, handler):
        self.handlers.append(handler)
        return FakeSubscription(self, handler)

    async def query_past_events(
        self, contract, event_name, from_block=0, to_block="latest", argument_filters=None
    ):
        self.queries.append((event_name, from_block, to_block, argument_filters))
        if self.query_error is not None:
            raise self.query_error
        out = [e for e in self.events if e.event == event_name]
        wanted = (argument_filters or {}).get("investor")
        if wanted:
            out = [e for e in out if str(e.args["investor"]).lower() == wanted.lower()]
        return out

    def emit(self, raw):
        for h in list(self.handlers):
            h(raw)


def investment(token_id, investor, share, amount, *, block=None, ts=None, tx=None):
    return RawEvent(
        event="InvestmentCreated",
        args={
            "investor": investor,
            "tokenId": token_id,
            "sharePercent": share,
            "investedAmount": amount,
        },
        block_number=block,
        tx_hash=tx,
        timestamp=ts,
    )


class FakeCompute:
    """Scripted compute client: each call pops the next response or error."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    async def compute(self, program, public_inputs, private_inputs=None, meta=None):
        self.calls.append(
            {
                "program": program,
                "publicInputs": dict(public_inputs),
                "privateInputs": dict(private_inputs or {}),
                "meta": dict(meta or {}),
            }
        )
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def valid_response(proof_id="p1", commitment="0xabc", proof="0xdeadbeef"):
    return {
        "status": "VALID",
        "proofId": proof_id,
        "publicOutput": {"commitment": commitment},
        "proof": proof,
    }


@pytest.fixture
def store(tmp_path):
    s = SQLiteSubmissionStore(str(tmp_path / "frs.db"))
    yield s
    s.close()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def payout_contract():
    return ContractRef("PayoutManager", "0x" + "11" * 20, tuple(PAYOUT_ABI))


@pytest.fixture
def oracle_contract():
    return ContractRef("OracleVerification", "0x" + "22" * 20, tuple(ORACLE_ABI))


@pytest.fixture
def registry_contract():
    return ContractRef("InvestmentRegistry", "0x" + "33" * 20, tuple(REGISTRY_ABI))


@pytest.fixture
def make_investment():
    return investment


@pytest.fixture
def make_compute():
    return FakeCompute


@pytest.fixture
def make_valid_response():
    return valid_response
