import json
import time
import logging
from typing import Any, Callable, Dict, Optional, Sequence

import requests
from web3 import Web3

from .artifacts import BuildInfo, ContractArtifact
from .models import VerifyResponse

logger = logging.getLogger(__name__)

DEFAULT_EXPLORER_API_URL = "https://api.etherscan.io/v2/api"
PENDING_MARKER = "pending in queue"


def encode_constructor_args(artifact: ContractArtifact, constructor_args: Sequence[Any]) -> str:
    """ABI-encoded constructor arguments as hex without the 0x prefix."""
    if not constructor_args:
        return ""
    contract = Web3().eth.contract(abi=artifact.abi, bytecode=artifact.bytecode)
    data = contract.constructor(*constructor_args).data_in_transaction
    bytecode = artifact.bytecode if artifact.bytecode.startswith("0x") else "0x" + artifact.bytecode
    return data[len(bytecode):]


class EtherscanVerifier:
    """
    Source verification through an Etherscan-compatible API.

    Submits the Hardhat standard-JSON compiler input with verifysourcecode and
    follows the returned GUID with checkverifystatus until the explorer
    finishes processing it.
    """

    def __init__(self, api_key: str,
                 artifact: ContractArtifact,
                 build_info: BuildInfo,
                 api_url: str = DEFAULT_EXPLORER_API_URL,
                 chain_id: Optional[int] = None,
                 session: Optional[requests.Session] = None,
                 status_poll_interval: float = 5.0,
                 status_poll_attempts: int = 12,
                 timeout: int = 30,
                 sleep: Callable[[float], None] = time.sleep):
        if not api_key:
            raise ValueError("An explorer API key is required for source verification")
        self.api_key = api_key
        self.artifact = artifact
        self.build_info = build_info
        self.api_url = api_url
        self.chain_id = chain_id
        self.session = session or requests.Session()
        self.status_poll_interval = status_poll_interval
        self.status_poll_attempts = status_poll_attempts
        self.timeout = timeout
        self._sleep = sleep

    def _base_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"apikey": self.api_key, "module": "contract"}
        if self.chain_id is not None:
            params["chainid"] = self.chain_id
        return params

    def verify_source(self, address: str, constructor_args: Sequence[Any]) -> VerifyResponse:
        """Submit source code for verification and wait for the explorer's verdict."""
        query = self._base_params()
        form = {
            "action": "verifysourcecode",
            "contractaddress": address,
            "sourceCode": json.dumps(self.build_info.input),
            "codeformat": "solidity-standard-json-input",
            "contractname": self.artifact.fully_qualified_name,
            "compilerversion": self.build_info.compiler_version,
            # Etherscan's API spells this parameter with a typo
            "constructorArguements": encode_constructor_args(self.artifact, constructor_args),
        }

        logger.debug(f"Submitting {self.artifact.fully_qualified_name} at {address} to {self.api_url}")
        response = self.session.post(self.api_url, params=query, data=form, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        result = str(data.get("result", ""))

        if str(data.get("status")) != "1":
            return VerifyResponse.error(result or data.get("message", "Unknown explorer error"))

        logger.info(f"Verification submitted, GUID {result}")
        return self.check_status(result)

    def check_status(self, guid: str) -> VerifyResponse:
        params = self._base_params()
        params.update({"action": "checkverifystatus", "guid": guid})

        for _ in range(self.status_poll_attempts):
            self._sleep(self.status_poll_interval)
            response = self.session.get(self.api_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            result = str(data.get("result", ""))

            if PENDING_MARKER in result.lower():
                logger.debug(f"Verification {guid} pending in queue")
                continue
            if str(data.get("status")) == "1":
                return VerifyResponse.verified(result)
            return VerifyResponse.error(result)

        return VerifyResponse.error(
            f"Verification {guid} still in queue after {self.status_poll_attempts} status checks"
        )
