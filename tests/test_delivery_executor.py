"""
Tests for transfer submission and confirmation handling.
"""
import pytest
import requests
from urllib3.exceptions import NewConnectionError
from web3.exceptions import ContractLogicError, Web3RPCError

from services.delivery_executor import DeliveryExecutor
from services.errors import ConfirmationTimeout, SubmissionFailed, TransferReverted
from tests.conftest import RECIPIENT, SENDER

pytestmark = pytest.mark.unit


@pytest.fixture
def executor(chain):
    return DeliveryExecutor(chain, confirmation_timeout=0.5)


def test_transfer_confirms_and_reports_hash(executor, chain):
    submitted = []

    receipt = executor.transfer(SENDER, RECIPIENT, 10, 2, on_submitted=submitted.append)

    assert receipt.confirmed is True
    assert receipt.transfer_id.startswith("0x")
    assert submitted == [receipt.transfer_id]
    assert len(chain.broadcasts) == 1
    assert chain.balances[RECIPIENT] == 2


def test_sign_failure_is_submission_failed_without_broadcast(executor, chain):
    chain.sign_error = ValueError("insufficient funds for gas")

    with pytest.raises(SubmissionFailed) as exc:
        executor.transfer(SENDER, RECIPIENT, 10, 1)

    assert exc.value.transfer_id is None
    assert chain.broadcasts == []


@pytest.mark.parametrize(
    "error",
    [
        requests.ConnectionError(NewConnectionError(None, "Failed to establish a new connection")),
        requests.ConnectTimeout("connect timed out"),
        Web3RPCError("nonce too low"),
        ContractLogicError("reverted"),
    ],
)
def test_broadcast_rejection_is_submission_failed(executor, chain, error):
    chain.broadcast_error = error
    submitted = []

    with pytest.raises(SubmissionFailed):
        executor.transfer(SENDER, RECIPIENT, 10, 1, on_submitted=submitted.append)

    assert submitted == []


@pytest.mark.parametrize(
    "error",
    [
        requests.ReadTimeout("read timed out"),
        requests.ConnectionError("('Connection aborted.', RemoteDisconnected('Remote end closed connection'))"),
        requests.ConnectionError("Connection reset by peer"),
    ],
)
def test_broadcast_without_reply_is_uncertain(executor, chain, error):
    chain.lost_reply = error

    with pytest.raises(ConfirmationTimeout) as exc:
        executor.transfer(SENDER, RECIPIENT, 10, 1)

    assert exc.value.transfer_id == chain.broadcasts[0]["transfer_id"]
    assert len(chain.broadcasts) == 1


def test_missing_receipt_is_confirmation_timeout(executor, chain):
    chain.mode = "timeout"
    submitted = []

    with pytest.raises(ConfirmationTimeout) as exc:
        executor.transfer(SENDER, RECIPIENT, 10, 1, on_submitted=submitted.append)

    assert exc.value.transfer_id == submitted[0]
    assert chain.balances.get(RECIPIENT, 0) == 0


def test_reverted_receipt_is_submission_failed(executor, chain):
    chain.mode = "revert"

    with pytest.raises(TransferReverted) as exc:
        executor.transfer(SENDER, RECIPIENT, 10, 1)

    assert isinstance(exc.value, SubmissionFailed)
    assert exc.value.transfer_id is not None


def test_lookup_tracks_receipt(executor, chain):
    chain.mode = "timeout"
    with pytest.raises(ConfirmationTimeout) as exc:
        executor.transfer(SENDER, RECIPIENT, 10, 1)
    transfer_id = exc.value.transfer_id

    assert executor.lookup(transfer_id) is None

    chain.mine(transfer_id, status=1)
    found = executor.lookup(transfer_id)
    assert found.confirmed is True
    assert found.transfer_id == transfer_id


def test_lookup_reports_revert(executor, chain):
    chain.mode = "timeout"
    with pytest.raises(ConfirmationTimeout) as exc:
        executor.transfer(SENDER, RECIPIENT, 10, 1)

    chain.mine(exc.value.transfer_id, status=0)

    assert executor.lookup(exc.value.transfer_id).confirmed is False
