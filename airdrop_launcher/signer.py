import logging

from eth_account import Account
from web3 import Web3

from .models import Action, SignedSubmission

logger = logging.getLogger(__name__)


class LocalSigner:
    """Signs transactions with a locally held private key."""

    def __init__(self, private_key: str):
        if not private_key:
            raise ValueError("A private key is required to sign transactions")
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def bind(self, client) -> "BoundSigner":
        """Signing capability for one RPC endpoint"""
        return BoundSigner(self._account, client)

    def __repr__(self) -> str:
        return f"LocalSigner(address={self.address})"


class BoundSigner:
    def __init__(self, account, client):
        self._account = account
        self.client = client

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, action: Action) -> SignedSubmission:
        """
        Build and sign an action without broadcasting it.

        The returned raw bytes carry a fixed nonce, so every rebroadcast of
        them is the same transaction under the same hash.
        """
        tx = self.client.build_transaction(action, self._account.address)
        logger.debug(f"Signing {action.label} transaction nonce={tx.get('nonce')} gas={tx.get('gas')}")
        signed = self._account.sign_transaction(tx)
        return SignedSubmission(
            tx_hash=Web3.to_hex(signed.hash),
            raw_transaction=bytes(signed.raw_transaction),
            nonce=tx["nonce"],
        )
