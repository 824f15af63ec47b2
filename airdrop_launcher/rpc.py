import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from .errors import TransactionRevertedError
from .models import Action, DeployAction, Endpoint, TransferAction

# Only the two token operations the launcher needs
ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]

READ_ONLY_FUNCTIONS = ("balanceOf",)
GAS_LIMIT_MULTIPLIER = 1.2


@dataclass(frozen=True)
class ConfirmedReceipt:
    tx_hash: str
    block_number: int
    confirmations: int
    status: int = 1
    contract_address: Optional[str] = None


class Web3Client:
    """RPC endpoint capability bound to a single endpoint URL."""

    def __init__(self, endpoint: Endpoint,
                 timeout: int = 60,
                 receipt_timeout: int = 300,
                 poll_interval: float = 3.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.endpoint = endpoint
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

        self.w3 = Web3(Web3.HTTPProvider(endpoint.url, request_kwargs={"timeout": timeout}))
        # BSC and other POA chains carry oversized extraData in block headers
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    @property
    def chain_id(self) -> int:
        return self.w3.eth.chain_id

    def block_number(self) -> int:
        return self.w3.eth.block_number

    def get_native_balance(self, address: str) -> int:
        return self.w3.eth.get_balance(Web3.to_checksum_address(address))

    def get_token_balance(self, token_address: str, address: str) -> int:
        return self.call(token_address, "balanceOf", [Web3.to_checksum_address(address)])

    def call(self, contract_address: str, function_name: str, args: Sequence[Any]) -> Any:
        """Run a read-only token function."""
        if function_name not in READ_ONLY_FUNCTIONS:
            raise ValueError(f"Unsupported read-only call: {function_name}")
        token = self._token(contract_address)
        return getattr(token.functions, function_name)(*args).call()

    def build_transaction(self, action: Action, sender: str) -> Dict[str, Any]:
        """
        Build an unsigned legacy transaction for a deploy or transfer action.

        The nonce comes from the mined ("latest") count, so a transaction of
        ours still waiting in the mempool is collided with rather than queued
        behind; the node then rejects the new one as a nonce conflict.
        """
        sender = Web3.to_checksum_address(sender)
        base = {
            "from": sender,
            "nonce": self.w3.eth.get_transaction_count(sender, "latest"),
            "gasPrice": self.w3.eth.gas_price,
            "chainId": self.chain_id,
        }

        if isinstance(action, DeployAction):
            contract = self.w3.eth.contract(abi=action.artifact.abi, bytecode=action.artifact.bytecode)
            fn = contract.constructor(*action.constructor_args)
        elif isinstance(action, TransferAction):
            token = self._token(action.token_address)
            fn = token.functions.transfer(
                Web3.to_checksum_address(action.recipient), action.amount_base_units
            )
        else:
            raise TypeError(f"Unsupported action type: {type(action).__name__}")

        gas = fn.estimate_gas({"from": sender})
        base["gas"] = int(gas * GAS_LIMIT_MULTIPLIER)
        return fn.build_transaction(base)

    def send_raw_transaction(self, raw_transaction: bytes) -> str:
        tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
        return Web3.to_hex(tx_hash)

    def has_transaction(self, tx_hash: str) -> bool:
        """Whether this endpoint knows the transaction, mined or still pending."""
        try:
            return self.w3.eth.get_transaction(tx_hash) is not None
        except TransactionNotFound:
            return False

    def get_receipt(self, tx_hash: str) -> Optional[ConfirmedReceipt]:
        """Receipt for a transaction if it has been mined, else None."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return self._to_confirmed(tx_hash, receipt, self.block_number())

    def wait_for_confirmations(self, tx_hash: str, confirmations: int) -> ConfirmedReceipt:
        """
        Block until the transaction is mined and buried under enough blocks.

        The mining block itself counts as the first confirmation. Raises
        TransactionRevertedError for a failed receipt and TimeExhausted when
        the depth is not reached within receipt_timeout.
        """
        deadline = time.monotonic() + self.receipt_timeout
        receipt = self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_interval
        )
        if receipt["status"] != 1:
            raise TransactionRevertedError(tx_hash, receipt["blockNumber"])

        while True:
            current = self.block_number()
            depth = current - receipt["blockNumber"] + 1
            if depth >= confirmations:
                return self._to_confirmed(tx_hash, receipt, current)
            if time.monotonic() >= deadline:
                raise TimeExhausted(
                    f"Transaction {tx_hash} reached {depth}/{confirmations} confirmations "
                    f"before the {self.receipt_timeout}s timeout"
                )
            self.logger.debug(f"{tx_hash}: {depth}/{confirmations} confirmations")
            self._sleep(self.poll_interval)

    def _token(self, token_address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)

    @staticmethod
    def _to_confirmed(tx_hash: str, receipt, current_block: int) -> ConfirmedReceipt:
        return ConfirmedReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            confirmations=max(0, current_block - receipt["blockNumber"] + 1),
            status=receipt["status"],
            contract_address=receipt.get("contractAddress"),
        )
