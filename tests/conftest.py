"""
Pytest configuration and fixtures for the delivery backend tests.

Backends are faked at the edges: the Pi API behind a requests-like
session, the chain behind a ChainClient-like object. The database is a
real SQLite file per test so concurrent threads get their own connections.
"""
import hashlib
import json
import threading
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Generator, List, Optional

import pytest
import requests
from urllib3.exceptions import NewConnectionError
from web3.exceptions import TimeExhausted

from config import Settings
from database import init_db, make_engine, make_session_factory
from services.chain import SignedTransfer
from services.factory import Services, build_services

PAYEE = "GRECEIVERWALLETPIACCOUNT"
PAYER = "GPAYERPIACCOUNT"
UNIT_PRICE = Decimal("4")

RECIPIENT = "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4"
OTHER_RECIPIENT = "0xAb8483F64d9C6d1EcF9b849Ae677dD3315835cb2"
SENDER = "0x4B20993Bc481177ec7E8f571ceCaE8A9e22C02db"
CONTRACT = "0x78731D3Ca6b7E34aC0F824c42a7cC18A495cabaB"


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: tests that use fakes only")
    config.addinivalue_line("markers", "integration: tests that exercise the HTTP app end to end")


# =======================
# FAKE PI API
# =======================

class FakeResponse:
    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        self.text = text

    def json(self):
        return json.loads(self.text)


def pi_payment(
    reference: str,
    amount="8",
    payee: str = PAYEE,
    completed: bool = True,
    cancelled: bool = False,
) -> dict:
    """A Pi v2 PaymentDTO."""
    return {
        "identifier": reference,
        "user_uid": "user-1",
        "amount": amount,
        "memo": "NFT Purchase",
        "metadata": {},
        "from_address": PAYER,
        "to_address": payee,
        "direction": "user_to_app",
        "status": {
            "developer_approved": True,
            "transaction_verified": completed,
            "developer_completed": False,
            "cancelled": cancelled,
            "user_cancelled": False,
        },
        "transaction": {"txid": "pi-tx", "verified": completed} if completed else None,
    }


class FakePiSession:
    """Stands in for requests.Session inside PiPaymentsClient."""

    def __init__(self):
        self.payments: Dict[str, dict] = {}
        self.responses: Dict[str, FakeResponse] = {}
        self.errors: Dict[str, Exception] = {}
        self.created: List[dict] = []
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def add_payment(self, reference: str, **kwargs) -> dict:
        payment = pi_payment(reference, **kwargs)
        self.payments[reference] = payment
        return payment

    def _create(self, body: dict) -> FakeResponse:
        with self._lock:
            reference = f"pi-created-{len(self.created) + 1}"
            self.created.append(body)
        payment = pi_payment(reference, amount=body["amount"], completed=False)
        payment["memo"] = body["memo"]
        payment["metadata"] = body["metadata"]
        return FakeResponse(200, json.dumps(payment))

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        with self._lock:
            self.calls.append(
                {"method": method, "url": url, "headers": headers, "timeout": timeout, "json": kwargs.get("json")}
            )
        reference = url.rstrip("/").split("/")[-1]
        if url.endswith("/approve"):
            reference = url.rstrip("/").split("/")[-2]
        if reference in self.errors:
            raise self.errors[reference]
        if reference in self.responses:
            return self.responses[reference]
        if method == "POST" and reference == "payments":
            return self._create(kwargs["json"])
        if reference not in self.payments:
            return FakeResponse(404, json.dumps({"error": "payment_not_found"}))
        payment = dict(self.payments[reference])
        if url.endswith("/approve"):
            payment["status"] = dict(payment["status"], developer_approved=True)
        return FakeResponse(200, json.dumps(payment))

    def gets_for(self, reference: str) -> int:
        return sum(1 for c in self.calls if c["method"] == "GET" and c["url"].endswith("/" + reference))


# =======================
# FAKE CHAIN
# =======================

class FakeChain:
    """
    In-memory ERC-1155 ledger with the ChainClient surface.

    mode controls what happens after broadcast:
      "confirm"  - mined with status 1, balance moves
      "revert"   - mined with status 0, balance unchanged
      "timeout"  - wait_for_receipt raises TimeExhausted, nothing mined yet

    lost_reply, when set, is raised once by broadcast after the node has
    already accepted the transaction.
    """

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.mode = "confirm"
        self.sign_error: Optional[Exception] = None
        self.broadcast_error: Optional[Exception] = None
        self.balance_error: Optional[Exception] = None
        self.lost_reply: Optional[Exception] = None
        self.broadcasts: List[dict] = []
        self.receipts: Dict[str, dict] = {}
        self.pending: Dict[str, dict] = {}
        self._nonce = 0
        self._lock = threading.Lock()

    def balance_of(self, owner: str, token_id: int) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        with self._lock:
            return self.balances.get(owner, 0)

    def sign_transfer(self, sender, recipient, token_id, units) -> SignedTransfer:
        if self.sign_error is not None:
            raise self.sign_error
        with self._lock:
            self._nonce += 1
            nonce = self._nonce
        raw = f"{sender}|{recipient}|{token_id}|{units}|{nonce}".encode()
        signed = SignedTransfer(transfer_id="0x" + hashlib.sha256(raw).hexdigest(), raw_transaction=raw)
        self.pending[signed.transfer_id] = {"recipient": recipient, "units": units}
        return signed

    def broadcast(self, signed: SignedTransfer) -> str:
        if self.broadcast_error is not None:
            raise self.broadcast_error
        with self._lock:
            self.broadcasts.append(dict(self.pending[signed.transfer_id], transfer_id=signed.transfer_id))
            lost_reply, self.lost_reply = self.lost_reply, None
        if lost_reply is not None:
            raise lost_reply
        return signed.transfer_id

    def mine(self, transfer_id: str, status: int = 1) -> dict:
        tx = self.pending[transfer_id]
        with self._lock:
            if status == 1:
                self.balances[tx["recipient"]] = self.balances.get(tx["recipient"], 0) + tx["units"]
            receipt = {"transactionHash": transfer_id, "status": status, "blockNumber": len(self.receipts) + 1}
            self.receipts[transfer_id] = receipt
        return receipt

    def wait_for_receipt(self, transfer_id: str, timeout: float) -> dict:
        if self.mode == "timeout":
            raise TimeExhausted(f"Transaction {transfer_id} is not in the chain after {timeout} seconds")
        return self.mine(transfer_id, status=1 if self.mode == "confirm" else 0)

    def get_receipt(self, transfer_id: str) -> Optional[dict]:
        return self.receipts.get(transfer_id)


# =======================
# SETTINGS / DATABASE
# =======================

def make_settings(**overrides) -> Settings:
    settings = Settings(
        pi_api_key="test-pi-key",
        pi_validation_key="validation-key-123",
        pi_receiver_wallet=PAYEE,
        use_pi_testnet=True,
        session_secret="test-session-secret",
        nft_contract_address=CONTRACT,
        nft_sender_address=SENDER,
        sender_private_key="0x" + "11" * 32,
        nft_token_id=10,
        nft_price_pi=UNIT_PRICE,
        polygon_rpc_url="http://localhost:8545",
        max_supply=2000,
        per_wallet_cap=10,
        max_per_tx=10,
        confirmation_timeout=1.0,
    )
    return replace(settings, **overrides)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'delivery.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def pi_session() -> FakePiSession:
    return FakePiSession()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def build(session_factory, pi_session, chain):
    """Factory: build(settings) -> loaded Services wired to the fakes."""

    def _build(settings: Settings) -> Services:
        services = build_services(settings, session_factory, chain=chain, http_session=pi_session)
        services.ledger.load()
        return services

    return _build


@pytest.fixture
def services(build, settings) -> Generator[Services, None, None]:
    yield build(settings)


@pytest.fixture
def pipeline(services):
    return services.pipeline


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def connection_refused() -> Exception:
    return requests.ConnectionError("connection refused")


@pytest.fixture
def node_unreachable() -> Exception:
    """What requests raises when the TCP connection to the RPC node never opens."""
    return requests.ConnectionError(NewConnectionError(None, "Failed to establish a new connection: [Errno 111]"))
