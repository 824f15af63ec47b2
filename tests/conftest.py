from typing import Dict, List, Optional

import pytest

from airdrop_launcher.artifacts import ContractArtifact
from airdrop_launcher.models import DeployAction, Endpoint, SignedSubmission, TransferAction
from airdrop_launcher.rpc import ConfirmedReceipt

TOKEN = "0xACa94ef8bD5ffEE41947b4585a84BdA5a3d3DA6E"
RECIPIENT = "0x28a8746e75304c0780E011BEd21C72cD78cd535E"
SENDER = "0x90F8bf6A479f320ead074411a4B0e7944Ea8c9C1"
# Well-known development key for SENDER
TEST_KEY = "0x4f3edf983ac636a65a842ce7c78d9aa706d3b113bce9c46f30d7d21715b23b1d"

# Minimal constructor(address,uint256) contract ABI for encoding tests
AIRDROP_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "token", "type": "address"},
            {"internalType": "uint256", "name": "claimAmount", "type": "uint256"},
        ],
        "stateMutability": "nonpayable",
        "type": "constructor",
    }
]


class FakeClient:
    """
    Scripted RPC client for one endpoint.

    send_results holds, per signing attempt, either a tx hash to hand back or
    an exception to raise before anything is broadcast. known_txs are hashes
    the endpoint reports as pending; broadcast_errors are raised, in order,
    by send_raw_transaction.
    """

    def __init__(self, endpoint: Endpoint, send_results=None, native_balance=10 ** 18,
                 token_balance=10 ** 24, receipts: Optional[Dict[str, ConfirmedReceipt]] = None,
                 known_txs=(), broadcast_errors=()):
        self.endpoint = endpoint
        self.send_results = list(send_results or [])
        self.native_balance = native_balance
        self.token_balance = token_balance
        self.receipts = receipts or {}
        self.known_txs = set(known_txs)
        self.broadcast_errors = list(broadcast_errors)
        self.sent: List[object] = []
        self.broadcasts: List[bytes] = []
        self.receipt_lookups: List[str] = []
        self.confirmation_waits: List[tuple] = []

    def get_native_balance(self, address):
        if isinstance(self.native_balance, Exception):
            raise self.native_balance
        return self.native_balance

    def get_token_balance(self, token_address, address):
        if isinstance(self.token_balance, Exception):
            raise self.token_balance
        return self.token_balance

    def sign(self, action):
        result = self.send_results.pop(0) if self.send_results else "0xdefault"
        if isinstance(result, Exception):
            raise result
        self.sent.append(action)
        return SignedSubmission(tx_hash=result, raw_transaction=result.encode(), nonce=len(self.sent) - 1)

    def send_raw_transaction(self, raw_transaction):
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        self.broadcasts.append(raw_transaction)
        return raw_transaction.decode()

    def has_transaction(self, tx_hash):
        return tx_hash in self.known_txs

    def get_receipt(self, tx_hash):
        self.receipt_lookups.append(tx_hash)
        return self.receipts.get(tx_hash)

    def wait_for_confirmations(self, tx_hash, confirmations):
        self.confirmation_waits.append((tx_hash, confirmations))
        return ConfirmedReceipt(
            tx_hash=tx_hash,
            block_number=100,
            confirmations=confirmations,
            contract_address="0x5FbDB2315678afecb367f032d93F642f64180aa3",
        )


class FakeBound:
    def __init__(self, client):
        self.client = client
        self.address = SENDER

    def sign(self, action):
        return self.client.sign(action)


class FakeSigner:
    address = SENDER

    def __init__(self):
        self.bound_to: List[FakeClient] = []

    def bind(self, client):
        self.bound_to.append(client)
        return FakeBound(client)


class ClientRegistry:
    """client_factory that hands out pre-scripted FakeClients by endpoint URL."""

    def __init__(self, clients: Dict[str, FakeClient]):
        self.clients = clients
        self.created: List[str] = []

    def __call__(self, endpoint: Endpoint) -> FakeClient:
        self.created.append(endpoint.url)
        return self.clients[endpoint.url]


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def endpoints():
    return Endpoint.from_urls(["https://rpc-1.test", "https://rpc-2.test", "https://rpc-3.test"])


@pytest.fixture
def artifact():
    return ContractArtifact(
        contract_name="AirdropSimple",
        source_name="contracts/AirdropSimple.sol",
        abi=AIRDROP_ABI,
        bytecode="0x6080604052",
    )


@pytest.fixture
def deploy_action(artifact):
    return DeployAction(artifact=artifact, constructor_args=(TOKEN, 50 * 10 ** 18))


@pytest.fixture
def transfer_action():
    return TransferAction(token_address=TOKEN, recipient=RECIPIENT, amount_base_units=1000)
