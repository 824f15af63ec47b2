"""
Tests for airdrop_launcher/controller.py

Covers endpoint ordering, per-endpoint retry bounds, fatal abort and
skip-endpoint routing, the pre-submission token balance check, follow-up
of already broadcast transactions under a single nonce, and cancellation.
"""
import threading

import pytest
import requests
from web3 import Web3
from web3.exceptions import TimeExhausted

from airdrop_launcher.controller import SubmissionController
from airdrop_launcher.errors import ErrorKind
from airdrop_launcher.models import AttemptStatus, Endpoint, Failure, Success
from airdrop_launcher.rpc import ConfirmedReceipt
from airdrop_launcher.signer import LocalSigner
from tests.conftest import TEST_KEY, TOKEN, ClientRegistry, FakeClient


def make_controller(clients, sleep):
    registry = ClientRegistry({c.endpoint.url: c for c in clients})
    return SubmissionController(client_factory=registry, sleep=sleep), registry


class MempoolNode:
    """Chain state shared by several endpoints; nothing it accepts is ever mined."""

    def __init__(self):
        self.mempool = []
        self.built_nonces = []

    def pending_count(self):
        return len(set(self.mempool))

    def hashes(self):
        return {Web3.to_hex(Web3.keccak(raw)) for raw in self.mempool}


class MempoolClient:
    """Endpoint in front of a MempoolNode. Nonces follow the pending count, the worst case for resends."""

    def __init__(self, endpoint, node, sees_mempool):
        self.endpoint = endpoint
        self.node = node
        self.sees_mempool = sees_mempool

    def get_native_balance(self, address):
        return 10 ** 18

    def get_token_balance(self, token_address, address):
        return 10 ** 24

    def build_transaction(self, action, sender):
        nonce = self.node.pending_count()
        self.node.built_nonces.append(nonce)
        return {"to": TOKEN, "value": 0, "gas": 60000, "gasPrice": 10 ** 9,
                "nonce": nonce, "chainId": 97, "data": "0x"}

    def send_raw_transaction(self, raw_transaction):
        self.node.mempool.append(bytes(raw_transaction))
        return Web3.to_hex(Web3.keccak(raw_transaction))

    def has_transaction(self, tx_hash):
        return self.sees_mempool and tx_hash in self.node.hashes()

    def get_receipt(self, tx_hash):
        return None

    def wait_for_confirmations(self, tx_hash, confirmations):
        raise TimeExhausted(f"Transaction {tx_hash} is not in the chain after 300 seconds")


class TestSuccessPaths:
    def test_first_endpoint_success_contacts_no_other_endpoint(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [FakeClient(e, send_results=["0xaaa"]) for e in endpoints]
        controller, registry = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints, signer)

        assert isinstance(outcome, Success)
        assert outcome.succeeded
        assert outcome.tx_hash == "0xaaa"
        assert outcome.endpoint == endpoints[0]
        assert registry.created == [endpoints[0].url]
        assert len(outcome.attempts) == 1
        assert outcome.attempts[0].status == AttemptStatus.SUCCESS
        assert clients[1].sent == [] and clients[2].sent == []
        assert sleep_recorder.calls == []

    def test_transfer_waits_for_one_confirmation(self, endpoints, signer, transfer_action, sleep_recorder):
        client = FakeClient(endpoints[0], send_results=["0xaaa"])
        controller, _ = make_controller([client], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:1], signer)

        assert client.confirmation_waits == [("0xaaa", 1)]
        assert outcome.confirmed_block_delta == 1

    def test_deploy_waits_for_five_confirmations_and_reports_address(self, endpoints, signer, deploy_action, sleep_recorder):
        client = FakeClient(endpoints[0], send_results=["0xdeploy"])
        controller, _ = make_controller([client], sleep_recorder)

        outcome = controller.submit(deploy_action, endpoints[:1], signer)

        assert client.confirmation_waits == [("0xdeploy", 5)]
        assert outcome.confirmed_block_delta == 5
        assert outcome.contract_address == "0x5FbDB2315678afecb367f032d93F642f64180aa3"

    def test_network_errors_on_two_endpoints_then_success(self, endpoints, signer, transfer_action, sleep_recorder):
        failing = [requests.exceptions.ConnectionError("connection refused")] * 3
        clients = [
            FakeClient(endpoints[0], send_results=list(failing)),
            FakeClient(endpoints[1], send_results=[TimeoutError("timed out")] * 3),
            FakeClient(endpoints[2], send_results=["0xccc"]),
        ]
        controller, registry = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints, signer, max_retries_per_endpoint=3, retry_delay=5.0)

        assert isinstance(outcome, Success)
        assert outcome.endpoint == endpoints[2]
        assert len(outcome.attempts) == 7
        for endpoint in endpoints[:2]:
            recorded = [a for a in outcome.attempts if a.endpoint == endpoint]
            assert len(recorded) == 3
            assert all(a.status == AttemptStatus.RETRYABLE_ERROR for a in recorded)
            assert all(a.classification.kind == ErrorKind.NETWORK_TRANSIENT for a in recorded)
        assert [a.index for a in outcome.attempts] == [1, 2, 3, 1, 2, 3, 1]
        # Delay only between attempts on the same endpoint
        assert sleep_recorder.calls == [5.0] * 4
        assert registry.created == [e.url for e in endpoints]


class TestFailurePaths:
    def test_gas_insufficient_aborts_whole_run(self, endpoints, signer, deploy_action, sleep_recorder):
        clients = [
            FakeClient(endpoints[0], send_results=[ValueError("insufficient funds for gas * price + value")]),
            FakeClient(endpoints[1], send_results=["0xbbb"]),
        ]
        controller, registry = make_controller(clients, sleep_recorder)

        outcome = controller.submit(deploy_action, endpoints[:2], signer)

        assert isinstance(outcome, Failure)
        assert not outcome.succeeded
        assert outcome.classification == ErrorKind.GAS_INSUFFICIENT
        assert outcome.hint
        assert registry.created == [endpoints[0].url]
        assert len(outcome.attempts) == 1
        assert outcome.attempts[0].status == AttemptStatus.FATAL_ERROR
        assert sleep_recorder.calls == []

    def test_nonce_conflict_aborts(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [FakeClient(endpoints[0], send_results=[ValueError("nonce too low")])]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:1], signer)

        assert outcome.classification == ErrorKind.NONCE_CONFLICT
        assert outcome.last_errors[0].message == "nonce too low"

    def test_confirmed_token_shortfall_skips_endpoint_without_sending(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [
            FakeClient(endpoints[0], token_balance=500),
            FakeClient(endpoints[1], send_results=["0xbbb"]),
        ]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer)

        assert clients[0].sent == []
        first = [a for a in outcome.attempts if a.endpoint == endpoints[0]]
        assert len(first) == 1
        assert first[0].classification.kind == ErrorKind.TOKEN_BALANCE_INSUFFICIENT
        assert first[0].status == AttemptStatus.FATAL_ERROR
        assert sleep_recorder.calls == []
        assert isinstance(outcome, Success)
        assert outcome.endpoint == endpoints[1]

    def test_shortfall_on_every_endpoint_fails(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [FakeClient(e, token_balance=500) for e in endpoints]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints, signer)

        assert isinstance(outcome, Failure)
        assert outcome.classification == ErrorKind.TOKEN_BALANCE_INSUFFICIENT
        assert len(outcome.attempts) == 3
        assert [e.endpoint for e in outcome.last_errors] == list(endpoints)

    def test_exceeds_balance_error_is_retried(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [FakeClient(endpoints[0], send_results=[
            ValueError("execution reverted: ERC20: transfer amount exceeds balance"),
            "0xaaa",
        ])]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:1], signer, retry_delay=2.0)

        assert isinstance(outcome, Success)
        assert outcome.attempts[0].classification.kind == ErrorKind.TOKEN_BALANCE_INSUFFICIENT
        assert outcome.attempts[0].status == AttemptStatus.RETRYABLE_ERROR
        assert sleep_recorder.calls == [2.0]

    def test_balance_read_failure_only_warns(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [FakeClient(endpoints[0], send_results=["0xaaa"],
                              native_balance=RuntimeError("boom"), token_balance=RuntimeError("boom"))]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:1], signer)

        assert isinstance(outcome, Success)

    def test_unclassified_errors_retry_then_fail(self, endpoints, signer, transfer_action, sleep_recorder):
        clients = [FakeClient(e, send_results=[RuntimeError("something odd")] * 2) for e in endpoints[:2]]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=2, retry_delay=1.0)

        assert isinstance(outcome, Failure)
        assert outcome.classification == ErrorKind.UNCLASSIFIED
        assert len(outcome.attempts) == 4
        assert len(outcome.last_errors) == 2
        assert all(err.message == "something odd" for err in outcome.last_errors)
        assert sleep_recorder.calls == [1.0, 1.0]

    @pytest.mark.parametrize("retries", [1, 2, 4])
    def test_total_attempts_bounded_by_endpoints_times_retries(self, endpoints, signer, transfer_action, sleep_recorder, retries):
        clients = [FakeClient(e, send_results=[RuntimeError("rate limit")] * retries) for e in endpoints]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints, signer, max_retries_per_endpoint=retries)

        assert len(outcome.attempts) == len(endpoints) * retries
        for endpoint in endpoints:
            assert len([a for a in outcome.attempts if a.endpoint == endpoint]) == retries

    def test_rejects_empty_endpoint_list(self, signer, transfer_action):
        with pytest.raises(ValueError):
            SubmissionController().submit(transfer_action, [], signer)

    def test_rejects_zero_retries(self, endpoints, signer, transfer_action):
        with pytest.raises(ValueError):
            SubmissionController().submit(transfer_action, endpoints, signer, max_retries_per_endpoint=0)


class TestPendingTransactions:
    def test_receipt_checked_before_resubmitting(self, endpoints, signer, transfer_action, sleep_recorder):
        # Broadcast succeeded but waiting for confirmation timed out
        first = FakeClient(endpoints[0], send_results=["0xaaa"])
        first.wait_for_confirmations = _raise(TimeoutError("timed out waiting for receipt"))
        mined = ConfirmedReceipt(tx_hash="0xaaa", block_number=90, confirmations=1)
        second = FakeClient(endpoints[1], receipts={"0xaaa": mined})
        controller, _ = make_controller([first, second], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=1)

        assert isinstance(outcome, Success)
        assert outcome.tx_hash == "0xaaa"
        assert second.receipt_lookups == ["0xaaa"]
        assert second.sent == []
        assert len(first.sent) == 1

    def test_pending_transaction_is_waited_on_not_rebuilt(self, endpoints, signer, transfer_action, sleep_recorder):
        first = FakeClient(endpoints[0], send_results=["0xaaa"])
        first.wait_for_confirmations = _raise(TimeoutError("timed out"))
        second = FakeClient(endpoints[1], known_txs={"0xaaa"})
        controller, _ = make_controller([first, second], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=1)

        assert isinstance(outcome, Success)
        assert outcome.tx_hash == "0xaaa"
        assert second.sent == [] and second.broadcasts == []
        assert second.confirmation_waits == [("0xaaa", 1)]
        assert controller.in_flight_tx is None

    def test_unknown_pending_transaction_is_rebroadcast_unchanged(self, endpoints, signer, transfer_action, sleep_recorder):
        first = FakeClient(endpoints[0], send_results=["0xaaa"])
        first.wait_for_confirmations = _raise(TimeoutError("timed out"))
        second = FakeClient(endpoints[1], send_results=["0xbbb"])
        controller, _ = make_controller([first, second], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=1)

        assert second.receipt_lookups == ["0xaaa"]
        assert second.sent == []
        assert second.broadcasts == first.broadcasts == [b"0xaaa"]
        assert outcome.tx_hash == "0xaaa"

    def test_already_known_reply_to_rebroadcast_is_not_an_error(self, endpoints, signer, transfer_action, sleep_recorder):
        first = FakeClient(endpoints[0], send_results=["0xaaa"])
        first.wait_for_confirmations = _raise(TimeoutError("timed out"))
        second = FakeClient(endpoints[1], broadcast_errors=[
            ValueError("{'code': -32000, 'message': 'already known'}"),
        ])
        controller, _ = make_controller([first, second], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=1)

        assert isinstance(outcome, Success)
        assert outcome.tx_hash == "0xaaa"

    def test_failed_broadcast_is_retried_with_same_signed_bytes(self, endpoints, signer, transfer_action, sleep_recorder):
        client = FakeClient(endpoints[0], send_results=["0xaaa", "0xbbb"],
                            broadcast_errors=[ConnectionError("connection reset by peer")])
        controller, _ = make_controller([client], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:1], signer, retry_delay=1.0)

        assert isinstance(outcome, Success)
        assert outcome.tx_hash == "0xaaa"
        assert len(client.sent) == 1
        assert client.broadcasts == [b"0xaaa"]
        assert [a.tx_hash for a in outcome.attempts] == ["0xaaa", "0xaaa"]

    def test_mempool_pending_transaction_uses_one_nonce(self, endpoints, transfer_action, sleep_recorder):
        node = MempoolNode()
        clients = [
            MempoolClient(endpoints[0], node, sees_mempool=True),
            MempoolClient(endpoints[1], node, sees_mempool=False),
        ]
        controller, _ = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], LocalSigner(TEST_KEY), max_retries_per_endpoint=2)

        assert isinstance(outcome, Failure)
        assert outcome.classification == ErrorKind.NETWORK_TRANSIENT
        assert node.built_nonces == [0]
        assert len(node.mempool) == 3
        assert len(set(node.mempool)) == 1
        tx_hash = Web3.to_hex(Web3.keccak(node.mempool[0]))
        assert outcome.pending_tx_hash == tx_hash
        assert all(a.tx_hash == tx_hash for a in outcome.attempts)

    def test_nonce_conflict_on_rebroadcast_reports_pending_hash(self, endpoints, signer, transfer_action, sleep_recorder):
        first = FakeClient(endpoints[0], send_results=["0xaaa"])
        first.wait_for_confirmations = _raise(TimeoutError("timed out"))
        second = FakeClient(endpoints[1], broadcast_errors=[ValueError("nonce too low")])
        controller, _ = make_controller([first, second], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=1)

        assert outcome.classification == ErrorKind.NONCE_CONFLICT
        assert outcome.pending_tx_hash == "0xaaa"
        assert second.sent == []

    def test_reverted_pending_transaction_is_not_success(self, endpoints, signer, transfer_action, sleep_recorder):
        first = FakeClient(endpoints[0], send_results=["0xaaa"])
        first.wait_for_confirmations = _raise(TimeoutError("timed out"))
        reverted = ConfirmedReceipt(tx_hash="0xaaa", block_number=90, confirmations=1, status=0)
        second = FakeClient(endpoints[1], receipts={"0xaaa": reverted})
        controller, _ = make_controller([first, second], sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints[:2], signer, max_retries_per_endpoint=1)

        assert isinstance(outcome, Failure)
        assert "reverted" in outcome.last_errors[-1].message


class TestCancellation:
    def test_cancel_before_first_attempt(self, endpoints, signer, transfer_action, sleep_recorder):
        cancel = threading.Event()
        cancel.set()
        clients = [FakeClient(e) for e in endpoints]
        controller, registry = make_controller(clients, sleep_recorder)

        outcome = controller.submit(transfer_action, endpoints, signer, cancel_event=cancel)

        assert isinstance(outcome, Failure)
        assert outcome.classification == ErrorKind.CANCELLED
        assert outcome.attempts == ()
        assert registry.created == []

    def test_cancel_between_attempts(self, endpoints, signer, transfer_action):
        cancel = threading.Event()

        def sleep(seconds):
            cancel.set()

        clients = [FakeClient(endpoints[0], send_results=[RuntimeError("connection reset")] * 3)]
        controller, _ = make_controller(clients, sleep)

        outcome = controller.submit(transfer_action, endpoints[:1], signer, cancel_event=cancel)

        assert outcome.classification == ErrorKind.CANCELLED
        assert len(outcome.attempts) == 1
        assert outcome.last_errors[0].kind == ErrorKind.NETWORK_TRANSIENT

    def test_cancel_after_broadcast_reports_in_flight_hash(self, endpoints, signer, transfer_action):
        cancel = threading.Event()

        def sleep(seconds):
            cancel.set()

        client = FakeClient(endpoints[0], send_results=["0xaaa"])
        client.wait_for_confirmations = _raise(TimeoutError("timed out"))
        controller, _ = make_controller([client], sleep)

        outcome = controller.submit(transfer_action, endpoints[:1], signer, cancel_event=cancel)

        assert outcome.classification == ErrorKind.CANCELLED
        assert outcome.pending_tx_hash == "0xaaa"
        assert controller.in_flight_tx == "0xaaa"


def test_from_settings_uses_configured_depths():
    from airdrop_launcher.config import RetrySettings

    controller = SubmissionController.from_settings(RetrySettings(deploy_confirmations=7, transfer_confirmations=2))

    assert controller.deploy_confirmations == 7
    assert controller.transfer_confirmations == 2


def _raise(error):
    def raiser(*args, **kwargs):
        raise error
    return raiser


def test_endpoints_keep_list_order():
    endpoints = Endpoint.from_urls(["https://b.test", " ", "https://a.test"])
    assert [e.url for e in endpoints] == ["https://b.test", "https://a.test"]
    assert [e.priority for e in endpoints] == [0, 1]
