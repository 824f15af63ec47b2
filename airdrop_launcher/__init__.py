"""
Airdrop Launcher - Deploy, verify and fund an airdrop contract on EVM chains
"""

__version__ = "0.1.0"

from .controller import SubmissionController
from .errors import Disposition, ErrorClassification, ErrorKind, classify
from .models import DeployAction, Endpoint, Failure, Success, TransferAction, VerificationState
from .verification import VerificationPoller

__all__ = [
    "SubmissionController",
    "VerificationPoller",
    "Disposition",
    "ErrorClassification",
    "ErrorKind",
    "classify",
    "DeployAction",
    "TransferAction",
    "Endpoint",
    "Success",
    "Failure",
    "VerificationState",
]
