"""
Endpoint failover controller.

Walks the RPC endpoints in priority order and, per endpoint, makes a bounded
number of strictly sequential attempts to get the action signed, broadcast and
confirmed. Errors are routed through the shared decision table in errors.py:

    ABORT          stop the whole run (gas funds, nonce conflicts)
    SKIP_ENDPOINT  stop retrying this endpoint, move to the next
    RETRY          wait retry_delay and try the same endpoint again

The action is signed once. While that transaction has no receipt the next
attempt, on whichever endpoint, waits for it if the node still knows it and
otherwise rebroadcasts the same signed bytes. A second nonce is never used.
"""
import time
import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from .config import RetrySettings
from .errors import (
    Disposition, ErrorClassification, ErrorKind, TokenBalanceInsufficientError,
    TransactionRevertedError, classify_exception, error_message, is_already_known,
)
from .models import (
    Action, Attempt, AttemptStatus, DeployAction, Endpoint, EndpointError,
    Failure, Outcome, SignedSubmission, Success, TransferAction,
)
from .rpc import ConfirmedReceipt, Web3Client

DEFAULT_MAX_RETRIES_PER_ENDPOINT = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0


class SubmissionController:
    """Gets one action included on-chain, failing over between RPC endpoints."""

    def __init__(self,
                 client_factory: Callable[[Endpoint], object] = Web3Client,
                 deploy_confirmations: int = 5,
                 transfer_confirmations: int = 1,
                 sleep: Callable[[float], None] = time.sleep):
        self.client_factory = client_factory
        self.deploy_confirmations = deploy_confirmations
        self.transfer_confirmations = transfer_confirmations
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)
        # Hash of the broadcast transaction of the current run, if any
        self.in_flight_tx: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: RetrySettings,
                      sleep: Callable[[float], None] = time.sleep) -> "SubmissionController":
        def factory(endpoint: Endpoint) -> Web3Client:
            return Web3Client(
                endpoint,
                timeout=settings.rpc_timeout_seconds,
                receipt_timeout=settings.receipt_timeout_seconds,
                sleep=sleep,
            )

        return cls(
            client_factory=factory,
            deploy_confirmations=settings.deploy_confirmations,
            transfer_confirmations=settings.transfer_confirmations,
            sleep=sleep,
        )

    def required_confirmations(self, action: Action) -> int:
        if isinstance(action, DeployAction):
            return self.deploy_confirmations
        return self.transfer_confirmations

    def submit(self, action: Action,
               endpoints: Sequence[Endpoint],
               signer,
               max_retries_per_endpoint: int = DEFAULT_MAX_RETRIES_PER_ENDPOINT,
               retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
               cancel_event: Optional[threading.Event] = None) -> Outcome:
        """
        Broadcast an action and wait for it to be confirmed.

        Args:
            action: DeployAction or TransferAction, already validated and approved.
            endpoints: RPC endpoints in priority order.
            signer: Signing capability exposing address and bind(client).
            max_retries_per_endpoint: Attempts made on each endpoint before moving on.
            retry_delay: Seconds to wait between attempts on the same endpoint.
            cancel_event: Checked before each attempt; once set no new attempt starts.

        Returns:
            Success with the confirmed transaction, or Failure with the last
            error seen on every endpoint tried.
        """
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")
        if max_retries_per_endpoint < 1:
            raise ValueError("max_retries_per_endpoint must be at least 1")

        depth = self.required_confirmations(action)
        attempts: List[Attempt] = []
        last_errors: List[EndpointError] = []
        last_classification: Optional[ErrorClassification] = None
        pending: Optional[SignedSubmission] = None
        self.in_flight_tx = None

        self.logger.info(
            f"Submitting {action.label} across {len(endpoints)} endpoint(s), "
            f"up to {max_retries_per_endpoint} attempt(s) each, {depth} confirmation(s) required"
        )

        for endpoint in endpoints:
            endpoint_error: Optional[EndpointError] = None
            client = None

            for index in range(1, max_retries_per_endpoint + 1):
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.warning("Submission cancelled before next attempt")
                    if endpoint_error:
                        last_errors.append(endpoint_error)
                    return Failure(
                        classification=ErrorKind.CANCELLED,
                        last_errors=tuple(last_errors),
                        attempts=tuple(attempts),
                        pending_tx_hash=self.in_flight_tx,
                    )

                attempt = Attempt(endpoint=endpoint, index=index, tx_hash=self.in_flight_tx)
                self.logger.info(f"Attempt {index}/{max_retries_per_endpoint} on {endpoint.url}")

                try:
                    if client is None:
                        client = self.client_factory(endpoint)

                    if pending:
                        receipt = self._resolve_pending(client, pending, depth)
                    else:
                        bound = signer.bind(client)
                        self._preflight(client, bound.address, action, endpoint)

                        pending = bound.sign(action)
                        self.in_flight_tx = pending.tx_hash
                        attempt = replace(attempt, tx_hash=pending.tx_hash)
                        self._broadcast(client, pending)
                        self.logger.info(
                            f"Broadcast {pending.tx_hash} (nonce {pending.nonce}) via {endpoint.url}, "
                            f"waiting for {depth} confirmation(s)"
                        )
                        receipt = client.wait_for_confirmations(pending.tx_hash, depth)

                    self.in_flight_tx = None
                    attempts.append(replace(attempt, status=AttemptStatus.SUCCESS))
                    return self._success(receipt, endpoint, attempts)

                except Exception as e:
                    if pending and isinstance(e, TransactionRevertedError) and e.tx_hash == pending.tx_hash:
                        pending = None
                        self.in_flight_tx = None

                    classification = classify_exception(e)
                    message = error_message(e)
                    fatal = classification.disposition in (Disposition.ABORT, Disposition.SKIP_ENDPOINT)
                    attempts.append(replace(
                        attempt,
                        status=AttemptStatus.FATAL_ERROR if fatal else AttemptStatus.RETRYABLE_ERROR,
                        classification=classification,
                        message=message,
                    ))
                    endpoint_error = EndpointError(endpoint=endpoint, message=message, kind=classification.kind)
                    last_classification = classification

                    if classification.disposition == Disposition.ABORT:
                        self.logger.error(
                            f"Aborting: {classification.kind.value} on {endpoint.url}: {message}"
                        )
                        last_errors.append(endpoint_error)
                        return Failure(
                            classification=classification.kind,
                            last_errors=tuple(last_errors),
                            attempts=tuple(attempts),
                            hint=classification.hint,
                            pending_tx_hash=self.in_flight_tx,
                        )

                    if classification.disposition == Disposition.SKIP_ENDPOINT:
                        self.logger.error(
                            f"Giving up on {endpoint.url}: {classification.kind.value}: {message}"
                        )
                        break

                    self.logger.warning(
                        f"Attempt {index}/{max_retries_per_endpoint} on {endpoint.url} failed "
                        f"({classification.kind.value}): {message}"
                    )
                    if index < max_retries_per_endpoint:
                        self.logger.info(f"Retrying in {retry_delay}s...")
                        self._sleep(retry_delay)

            if endpoint_error:
                last_errors.append(endpoint_error)
            self.logger.warning(f"Endpoint {endpoint.url} exhausted, moving to next endpoint")

        kind = last_classification.kind if last_classification else ErrorKind.UNCLASSIFIED
        self.logger.error(f"All {len(endpoints)} endpoint(s) failed; last error class {kind.value}")
        return Failure(
            classification=kind,
            last_errors=tuple(last_errors),
            attempts=tuple(attempts),
            hint=last_classification.hint if last_classification else "",
            pending_tx_hash=self.in_flight_tx,
        )

    def _resolve_pending(self, client, pending: SignedSubmission, depth: int) -> ConfirmedReceipt:
        """
        Follow up on an already broadcast transaction without signing anything new.

        A mined transaction is waited on to the required depth. One that is
        still known to the endpoint is waited on as well. One the endpoint has
        never seen gets the same signed bytes broadcast again.
        """
        tx_hash = pending.tx_hash
        self.logger.info(f"Checking receipt of previously broadcast {tx_hash}")
        receipt = client.get_receipt(tx_hash)
        if receipt is not None:
            if receipt.status != 1:
                raise TransactionRevertedError(tx_hash, receipt.block_number)
            self.logger.info(f"{tx_hash} was mined in block {receipt.block_number}, waiting for depth")
        elif client.has_transaction(tx_hash):
            self.logger.info(f"{tx_hash} is still pending, waiting for it to be mined")
        else:
            self.logger.warning(f"{tx_hash} unknown to {client.endpoint.url}; rebroadcasting nonce {pending.nonce}")
            self._broadcast(client, pending)
        return client.wait_for_confirmations(tx_hash, depth)

    def _broadcast(self, client, pending: SignedSubmission) -> None:
        try:
            client.send_raw_transaction(pending.raw_transaction)
        except Exception as e:
            if not is_already_known(e):
                raise
            self.logger.info(f"{pending.tx_hash} already known to {client.endpoint.url}")

    def _preflight(self, client, address: str, action: Action, endpoint: Endpoint) -> None:
        """Best-effort balance check. Only a confirmed token shortfall stops the attempt."""
        try:
            native = client.get_native_balance(address)
        except Exception as e:
            self.logger.warning(f"Could not read native balance on {endpoint.url}: {error_message(e)}")
        else:
            if native == 0:
                self.logger.warning(f"Sender {address} has zero native balance on {endpoint.url}; gas may not be covered")

        if not isinstance(action, TransferAction):
            return

        try:
            balance = client.get_token_balance(action.token_address, address)
        except Exception as e:
            self.logger.warning(f"Could not read token balance on {endpoint.url}: {error_message(e)}")
            return

        if balance < action.amount_base_units:
            raise TokenBalanceInsufficientError(action.token_address, action.amount_base_units, balance)
        self.logger.debug(f"Token balance {balance} covers transfer of {action.amount_base_units}")

    def _success(self, receipt: ConfirmedReceipt, endpoint: Endpoint, attempts: List[Attempt]) -> Success:
        self.logger.info(
            f"Transaction {receipt.tx_hash} confirmed in block {receipt.block_number} "
            f"({receipt.confirmations} confirmation(s)) via {endpoint.url}"
        )
        return Success(
            tx_hash=receipt.tx_hash,
            confirmed_block_delta=receipt.confirmations,
            block_number=receipt.block_number,
            endpoint=endpoint,
            contract_address=receipt.contract_address,
            attempts=tuple(attempts),
        )
