"""
Merkle tree for airdrop claimants.

Leaves are keccak256(abi.encodePacked(address, uint256 amount)), matching what
the airdrop contract recomputes from msg.sender and the claimed amount. Pairs
are sorted before hashing and an unpaired node is carried up to the next layer
unchanged, so proofs need no left/right flags.
"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Union

import pandas as pd
from web3 import Web3

from .config import to_base_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claimant:
    address: str
    amount: int  # base units

    @property
    def leaf(self) -> bytes:
        return leaf_for(self.address, self.amount)


def leaf_for(address: str, amount: int) -> bytes:
    return bytes(Web3.solidity_keccak(
        ["address", "uint256"], [Web3.to_checksum_address(address), int(amount)]
    ))


def _hash_pair(a: bytes, b: bytes) -> bytes:
    if b < a:
        a, b = b, a
    return bytes(Web3.keccak(a + b))


class MerkleTree:
    def __init__(self, leaves: Sequence[bytes]):
        if not leaves:
            raise ValueError("Cannot build a Merkle tree without leaves")
        self.leaves = [bytes(leaf) for leaf in leaves]
        self.layers = self._build(self.leaves)

    @staticmethod
    def _build(leaves: List[bytes]) -> List[List[bytes]]:
        layers = [leaves]
        while len(layers[-1]) > 1:
            layer = layers[-1]
            next_layer = []
            for i in range(0, len(layer), 2):
                if i + 1 < len(layer):
                    next_layer.append(_hash_pair(layer[i], layer[i + 1]))
                else:
                    next_layer.append(layer[i])
            layers.append(next_layer)
        return layers

    @property
    def root(self) -> bytes:
        return self.layers[-1][0]

    @property
    def hex_root(self) -> str:
        return Web3.to_hex(self.root)

    def proof(self, leaf: bytes) -> List[bytes]:
        try:
            index = self.leaves.index(bytes(leaf))
        except ValueError:
            raise ValueError("Leaf is not part of this tree")

        proof = []
        for layer in self.layers[:-1]:
            sibling = index ^ 1
            if sibling < len(layer):
                proof.append(layer[sibling])
            index //= 2
        return proof

    def hex_proof(self, leaf: bytes) -> List[str]:
        return [Web3.to_hex(node) for node in self.proof(leaf)]

    @staticmethod
    def verify(proof: Sequence[bytes], leaf: bytes, root: bytes) -> bool:
        computed = bytes(leaf)
        for node in proof:
            computed = _hash_pair(computed, bytes(node))
        return computed == bytes(root)


def build_tree(claimants: Sequence[Claimant]) -> MerkleTree:
    return MerkleTree([c.leaf for c in claimants])


def load_claimants(file_path: Union[str, Path], decimals: int = 18) -> List[Claimant]:
    """
    Read claimants from a CSV with 'address' and 'amount' columns.
    Amounts are whole-token values and are converted to base units.
    """
    logger.info(f"Loading claimants from CSV: {file_path}")
    df = pd.read_csv(file_path, dtype=str)
    missing = {'address', 'amount'} - set(df.columns)
    if missing:
        raise ValueError(f"CSV file must contain columns: {', '.join(sorted(missing))}")

    claimants = []
    for row_number, row in enumerate(df.itertuples(index=False), start=2):
        if pd.isna(row.address) or not str(row.address).strip():
            continue
        address = str(row.address).strip()
        if not Web3.is_address(address):
            raise ValueError(f"Row {row_number}: invalid address {address}")
        try:
            amount = to_base_units(str(row.amount), decimals)
        except ValueError as e:
            raise ValueError(f"Row {row_number}: {e}")
        claimants.append(Claimant(address=Web3.to_checksum_address(address), amount=amount))

    if not claimants:
        raise ValueError(f"No claimants found in {file_path}")
    logger.info(f"Loaded {len(claimants)} claimants from {file_path}")
    return claimants


def export_proofs(tree: MerkleTree, claimants: Sequence[Claimant], output_path: Union[str, Path]) -> Path:
    """Write the root and every claimant's proof as JSON for the claim front-end."""
    payload: Dict[str, object] = {
        "merkleRoot": tree.hex_root,
        "claims": {
            c.address: {"amount": str(c.amount), "proof": tree.hex_proof(c.leaf)}
            for c in claimants
        },
    }
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(payload, f, indent=2)
    logger.info(f"Wrote Merkle root and {len(claimants)} proofs to {output_path}")
    return output_path
