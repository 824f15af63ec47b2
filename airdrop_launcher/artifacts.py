"""
Hardhat compilation artifacts.

Deployment needs the ABI and creation bytecode of the contract; source
verification needs the standard-JSON compiler input and the exact solc version
recorded in the matching build-info file.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractArtifact:
    contract_name: str
    source_name: str
    abi: List[Dict[str, Any]]
    bytecode: str
    path: Optional[Path] = None

    @property
    def fully_qualified_name(self) -> str:
        return f"{self.source_name}:{self.contract_name}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[Path] = None) -> "ContractArtifact":
        bytecode = data.get("bytecode") or ""
        if not bytecode or bytecode == "0x":
            raise ConfigError(f"Artifact {data.get('contractName')} has no creation bytecode (abstract contract or interface?)")
        return cls(
            contract_name=data["contractName"],
            source_name=data["sourceName"],
            abi=data["abi"],
            bytecode=bytecode,
            path=path,
        )


@dataclass(frozen=True)
class BuildInfo:
    """Compiler input and version used to produce an artifact"""
    solc_version: str
    solc_long_version: str
    input: Dict[str, Any]

    @property
    def compiler_version(self) -> str:
        """Version string in the form block explorers expect, e.g. v0.8.19+commit.7dd6d404"""
        return f"v{self.solc_long_version}"

    @property
    def optimizer(self) -> Dict[str, Any]:
        return self.input.get("settings", {}).get("optimizer", {})


def find_artifact_path(artifacts_dir: Union[str, Path], contract_name: str) -> Path:
    """Locate <contract_name>.json under a Hardhat artifacts directory."""
    root = Path(artifacts_dir)
    if not root.is_dir():
        raise ConfigError(f"Artifacts directory not found: {root}. Run 'npx hardhat compile' first.")

    matches = sorted(
        p for p in root.rglob(f"{contract_name}.json")
        if "build-info" not in p.parts
    )
    if not matches:
        raise ConfigError(f"No artifact named {contract_name} under {root}")
    if len(matches) > 1:
        logger.warning(f"Multiple artifacts named {contract_name}, using {matches[0]}")
    return matches[0]


def load_artifact(artifacts_dir: Union[str, Path], contract_name: str) -> ContractArtifact:
    path = find_artifact_path(artifacts_dir, contract_name)
    logger.debug(f"Loading contract artifact from {path}")
    with open(path, "r") as f:
        return ContractArtifact.from_dict(json.load(f), path=path)


def load_build_info(artifact: ContractArtifact) -> BuildInfo:
    """Follow the artifact's .dbg.json pointer to its build-info file."""
    if artifact.path is None:
        raise ConfigError(f"Artifact {artifact.contract_name} was not loaded from disk; build info unavailable")

    dbg_path = artifact.path.with_name(f"{artifact.contract_name}.dbg.json")
    try:
        with open(dbg_path, "r") as f:
            build_info_ref = json.load(f)["buildInfo"]
    except FileNotFoundError:
        raise ConfigError(f"Debug file not found next to artifact: {dbg_path}")
    except KeyError:
        raise ConfigError(f"Debug file {dbg_path} has no buildInfo reference")

    build_info_path = (dbg_path.parent / build_info_ref).resolve()
    logger.debug(f"Loading build info from {build_info_path}")
    with open(build_info_path, "r") as f:
        data = json.load(f)

    return BuildInfo(
        solc_version=data["solcVersion"],
        solc_long_version=data["solcLongVersion"],
        input=data["input"],
    )
