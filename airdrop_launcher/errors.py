"""
Error taxonomy shared by the submission controller and the verification poller.

Every failure raised while broadcasting a transaction or verifying source code
is turned into an ErrorClassification by walking one ordered decision table.
The first row whose pattern appears in the lower-cased message wins.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Tuple

import requests
from web3.exceptions import TimeExhausted

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    GAS_INSUFFICIENT = "GasInsufficient"
    NONCE_CONFLICT = "NonceConflict"
    TOKEN_BALANCE_INSUFFICIENT = "TokenBalanceInsufficient"
    NETWORK_TRANSIENT = "NetworkTransient"
    BYTECODE_NOT_INDEXED = "BytecodeNotIndexed"
    ALREADY_VERIFIED = "AlreadyVerified"
    VERIFIER_CONFIG_MISMATCH = "VerifierConfigMismatch"
    UNCLASSIFIED = "Unclassified"
    CANCELLED = "Cancelled"


class Disposition(Enum):
    ABORT = "fatal-abort"            # stop the whole run
    SKIP_ENDPOINT = "fatal-endpoint"  # give up on this endpoint, try the next
    RETRY = "retryable"              # wait and try the same endpoint again
    DONE = "done"                    # not an error (already verified)


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    disposition: Disposition
    hint: str = ""

    @property
    def is_fatal(self) -> bool:
        return self.disposition == Disposition.ABORT


@dataclass(frozen=True)
class _Rule:
    kind: ErrorKind
    disposition: Disposition
    patterns: Tuple[str, ...]
    hint: str = ""


CONFIRMED_SHORTFALL_MARKER = "confirmed token balance below required amount"

OPTIMIZER_HINT = (
    "Compiler settings differ from the deployed bytecode. Check that the solc "
    "version and optimizer settings (enabled, runs=200) match the build used "
    "for deployment."
)

# Order matters: "does not have bytecode" must be seen before the generic
# bytecode mismatch rows, and the confirmed shortfall before "exceeds balance".
DECISION_TABLE: Tuple[_Rule, ...] = (
    _Rule(ErrorKind.ALREADY_VERIFIED, Disposition.DONE,
          ("already verified",)),
    _Rule(ErrorKind.GAS_INSUFFICIENT, Disposition.ABORT,
          ("insufficient funds", "insufficient balance for gas"),
          "Top up the deployer account with native currency for gas."),
    _Rule(ErrorKind.NONCE_CONFLICT, Disposition.ABORT,
          ("nonce too low", "nonce too high", "nonce has already been used",
           "replacement transaction underpriced", "transaction underpriced",
           "already known"),
          "A transaction with this nonce is pending or mined. Resolve it manually before retrying."),
    _Rule(ErrorKind.TOKEN_BALANCE_INSUFFICIENT, Disposition.SKIP_ENDPOINT,
          (CONFIRMED_SHORTFALL_MARKER,)),
    _Rule(ErrorKind.TOKEN_BALANCE_INSUFFICIENT, Disposition.RETRY,
          ("exceeds balance",)),
    _Rule(ErrorKind.BYTECODE_NOT_INDEXED, Disposition.RETRY,
          ("does not have bytecode", "unable to locate contractcode",
           "unable to locate contract code", "not yet indexed")),
    _Rule(ErrorKind.VERIFIER_CONFIG_MISMATCH, Disposition.RETRY,
          ("optimizer", "optimization", "compiler version",
           "bytecode does not match", "unable to verify"),
          OPTIMIZER_HINT),
    _Rule(ErrorKind.NETWORK_TRANSIENT, Disposition.RETRY,
          ("timeout", "timed out", "connection", "network", "rate limit",
           "too many requests", "bad gateway", "service unavailable",
           "temporarily unavailable", "econnreset", "socket hang up",
           "header not found", "max rate limit")),
)

# Node replies to a rebroadcast of a transaction it already holds
ALREADY_KNOWN_PATTERNS = ("already known", "known transaction")

_UNCLASSIFIED = ErrorClassification(ErrorKind.UNCLASSIFIED, Disposition.RETRY)

_NETWORK_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    TimeExhausted,
    ConnectionError,
    TimeoutError,
)


def classify(raw_message: str) -> ErrorClassification:
    """Classify a raw error message against the decision table."""
    message = (raw_message or "").lower()
    for rule in DECISION_TABLE:
        if any(pattern in message for pattern in rule.patterns):
            return ErrorClassification(rule.kind, rule.disposition, rule.hint)
    return _UNCLASSIFIED


def classify_exception(error: BaseException) -> ErrorClassification:
    """Classify an exception, treating transport failures as transient."""
    if isinstance(error, _NETWORK_EXCEPTIONS):
        classification = ErrorClassification(ErrorKind.NETWORK_TRANSIENT, Disposition.RETRY)
    else:
        classification = classify(error_message(error))
    logger.debug(
        f"Classified {type(error).__name__} as {classification.kind.value} ({classification.disposition.value})"
    )
    return classification


def is_already_known(error: BaseException) -> bool:
    """True when a node rejected a broadcast only because it already has that transaction."""
    message = error_message(error).lower()
    return any(pattern in message for pattern in ALREADY_KNOWN_PATTERNS)


def error_message(error: BaseException) -> str:
    """First line of an exception's text, falling back to its type name."""
    text = str(error).strip()
    if not text:
        return type(error).__name__
    return text.splitlines()[0]


class LauncherError(Exception):
    """Base exception for airdrop launcher errors"""


class ConfigError(LauncherError, ValueError):
    """Raised when configuration or network parameters are invalid."""


class TokenBalanceInsufficientError(LauncherError):
    """Raised when a direct balance read shows the sender cannot cover the transfer."""

    def __init__(self, token_address: str, required: int, available: int):
        self.token_address = token_address
        self.required = required
        self.available = available
        super().__init__(
            f"{CONFIRMED_SHORTFALL_MARKER} for {token_address}: "
            f"required {required}, available {available}"
        )


class TransactionRevertedError(LauncherError):
    """Raised when a mined transaction has a failed receipt status."""

    def __init__(self, tx_hash: str, block_number: int):
        self.tx_hash = tx_hash
        self.block_number = block_number
        super().__init__(f"Transaction {tx_hash} reverted in block {block_number}")


class VerificationInProgressError(LauncherError):
    """Raised when a second verification is started for an address already being verified."""
