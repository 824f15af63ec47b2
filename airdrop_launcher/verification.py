import time
import logging
import threading
from typing import Any, Callable, Sequence, Set

from .errors import (
    Disposition, ErrorKind, VerificationInProgressError, classify, classify_exception,
    error_message,
)
from .models import VerificationReport, VerificationState, VerifyStatus

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_DELAY_SECONDS = 30.0


class VerificationPoller:
    """
    Polls a source verification service until the contract is verified.

    Explorers index new bytecode with some lag, so failures are retried with a
    fixed delay rather than a backoff. At most one verification runs per
    address at a time.
    """

    def __init__(self, verifier, sleep: Callable[[float], None] = time.sleep):
        self.verifier = verifier
        self._sleep = sleep
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def verify(self, address: str,
               constructor_args: Sequence[Any],
               max_attempts: int = DEFAULT_MAX_ATTEMPTS,
               delay_between_attempts: float = DEFAULT_DELAY_SECONDS) -> VerificationReport:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        key = address.lower()
        with self._lock:
            if key in self._in_flight:
                raise VerificationInProgressError(f"Verification already running for {address}")
            self._in_flight.add(key)
        try:
            return self._poll(address, constructor_args, max_attempts, delay_between_attempts)
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def _poll(self, address: str, constructor_args: Sequence[Any],
              max_attempts: int, delay: float) -> VerificationReport:
        report = VerificationReport(address=address)
        _advance(report, VerificationState.VERIFYING)

        for attempt in range(1, max_attempts + 1):
            report.attempts = attempt
            self.logger.info(f"Attempting verification (Attempt {attempt}/{max_attempts})...")

            status = VerifyStatus.ERROR
            try:
                response = self.verifier.verify_source(address, constructor_args)
            except Exception as e:
                message = error_message(e)
                classification = classify_exception(e)
            else:
                status = response.status
                message = response.message
                classification = classify(message)

            if status == VerifyStatus.ALREADY_VERIFIED or classification.disposition == Disposition.DONE:
                self.logger.info(f"Contract {address} source code is already verified")
                _advance(report, VerificationState.ALREADY_VERIFIED)
                return report
            if status == VerifyStatus.VERIFIED:
                self.logger.info(f"Contract {address} verified successfully")
                _advance(report, VerificationState.VERIFIED)
                return report

            report.last_error = message
            if classification.kind == ErrorKind.BYTECODE_NOT_INDEXED:
                self.logger.warning(
                    f"Attempt {attempt} failed: the contract bytecode is not yet available on the block explorer."
                )
            elif classification.kind == ErrorKind.VERIFIER_CONFIG_MISMATCH:
                self.logger.error(f"Attempt {attempt} failed: {message}")
                self.logger.error(classification.hint)
                if classification.hint not in report.hints:
                    report.hints.append(classification.hint)
            else:
                self.logger.warning(f"Attempt {attempt} failed ({classification.kind.value}): {message}")

            if attempt < max_attempts:
                self.logger.info(f"Will retry in {delay:g} seconds...")
                self._sleep(delay)

        self.logger.error(f"All {max_attempts} verification attempts failed for {address}: {report.last_error}")
        _advance(report, VerificationState.FAILED)
        return report


_ALLOWED_TRANSITIONS = {
    VerificationState.UNVERIFIED: {VerificationState.VERIFYING},
    VerificationState.VERIFYING: {
        VerificationState.VERIFIED,
        VerificationState.ALREADY_VERIFIED,
        VerificationState.FAILED,
    },
}


def _advance(report: VerificationReport, state: VerificationState) -> None:
    """Move a report forward; states never regress."""
    allowed = _ALLOWED_TRANSITIONS.get(report.state, set())
    if state not in allowed:
        raise RuntimeError(f"Invalid verification state transition {report.state.value} -> {state.value}")
    report.state = state
