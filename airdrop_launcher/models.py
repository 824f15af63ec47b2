from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union

from .artifacts import ContractArtifact
from .errors import ErrorClassification, ErrorKind


@dataclass(frozen=True)
class Endpoint:
    """RPC endpoint; lower priority is tried first"""
    url: str
    priority: int = 0

    @classmethod
    def from_urls(cls, urls: Sequence[str]) -> List["Endpoint"]:
        """Build endpoints in list order, skipping blanks"""
        cleaned = [url.strip() for url in urls if url and url.strip()]
        return [cls(url=url, priority=index) for index, url in enumerate(cleaned)]

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class DeployAction:
    """Deploy a compiled contract with fixed constructor arguments"""
    artifact: ContractArtifact
    constructor_args: Tuple[Any, ...] = ()

    label = "deploy"

    def __post_init__(self):
        object.__setattr__(self, "constructor_args", tuple(self.constructor_args))


@dataclass(frozen=True)
class TransferAction:
    """Transfer ERC-20 tokens, amount expressed in base units"""
    token_address: str
    recipient: str
    amount_base_units: int

    label = "transfer"

    def __post_init__(self):
        self.validate()

    def validate(self) -> bool:
        """Validate transfer parameters"""
        if not self.token_address or not self.recipient:
            raise ValueError("Token address and recipient must be specified")
        if isinstance(self.amount_base_units, bool) or not isinstance(self.amount_base_units, int):
            raise ValueError("Transfer amount must be an integer number of base units")
        if self.amount_base_units <= 0:
            raise ValueError("Transfer amount must be greater than 0")
        return True


Action = Union[DeployAction, TransferAction]


class AttemptStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable-error"
    FATAL_ERROR = "fatal-error"


@dataclass(frozen=True)
class Attempt:
    """One try against one endpoint"""
    endpoint: Endpoint
    index: int
    status: AttemptStatus = AttemptStatus.PENDING
    classification: Optional[ErrorClassification] = None
    message: Optional[str] = None
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class SignedSubmission:
    """A signed transaction; rebroadcasting these bytes can never use a second nonce"""
    tx_hash: str
    raw_transaction: bytes
    nonce: int


@dataclass(frozen=True)
class EndpointError:
    endpoint: Endpoint
    message: str
    kind: ErrorKind


@dataclass(frozen=True)
class Success:
    """Transaction included and confirmed to the required depth"""
    tx_hash: str
    confirmed_block_delta: int
    block_number: int
    endpoint: Endpoint
    contract_address: Optional[str] = None
    attempts: Tuple[Attempt, ...] = ()

    succeeded = True


@dataclass(frozen=True)
class Failure:
    """Every endpoint exhausted, or the run was aborted"""
    classification: ErrorKind
    last_errors: Tuple[EndpointError, ...] = ()
    attempts: Tuple[Attempt, ...] = ()
    hint: str = ""
    # Broadcast but never seen mined; may still confirm later
    pending_tx_hash: Optional[str] = None

    succeeded = False


Outcome = Union[Success, Failure]


class VerificationState(Enum):
    UNVERIFIED = "Unverified"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    ALREADY_VERIFIED = "AlreadyVerified"
    FAILED = "Failed"

    @property
    def is_verified(self) -> bool:
        return self in (VerificationState.VERIFIED, VerificationState.ALREADY_VERIFIED)

    @property
    def is_terminal(self) -> bool:
        return self in (
            VerificationState.VERIFIED,
            VerificationState.ALREADY_VERIFIED,
            VerificationState.FAILED,
        )


class VerifyStatus(Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    ERROR = "error"


@dataclass(frozen=True)
class VerifyResponse:
    """Answer from a source verification service"""
    status: VerifyStatus
    message: str = ""

    @classmethod
    def verified(cls, message: str = "") -> "VerifyResponse":
        return cls(VerifyStatus.VERIFIED, message)

    @classmethod
    def already_verified(cls, message: str = "") -> "VerifyResponse":
        return cls(VerifyStatus.ALREADY_VERIFIED, message)

    @classmethod
    def error(cls, message: str) -> "VerifyResponse":
        return cls(VerifyStatus.ERROR, message)


@dataclass
class VerificationReport:
    """Result of a verification polling run"""
    address: str
    state: VerificationState = VerificationState.UNVERIFIED
    attempts: int = 0
    last_error: Optional[str] = None
    hints: List[str] = field(default_factory=list)
