"""
Contract instance creation utilities.
"""

import json
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Dict, List

from web3.contract import Contract

if TYPE_CHECKING:
    from .config_loader import ChainConfig


@lru_cache(maxsize=None)
def _read_abi(abi_path: str) -> str:
    with open(abi_path, "r", encoding="utf-8") as file:
        return file.read()


def load_abi(abi_path: str) -> List[Dict[str, Any]]:
    """Read the `abi` entry of a compiled-artifact style JSON file."""
    interface = json.loads(_read_abi(abi_path))
    return interface["abi"]


def create_contract_instance(address: str, abi_path: str, config: "ChainConfig") -> Contract:
    """
    Create and return a Web3 contract instance.

    Args:
        address: The address of the contract.
        abi_path: Path to the ABI JSON file.
        config: Chain configuration containing the Web3 instance.

    Returns:
        Web3 contract instance.
    """
    return config.w3.eth.contract(address=address, abi=load_abi(abi_path))
