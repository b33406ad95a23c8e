"""
Chain Models Package

This package contains the Pydantic models for data read from a chain's
Tendermint RPC endpoint and stored in the block cache:

- Block, BlockHeader, Commit, CommitSig: block data used for change detection
- Validator: address and voting power at a height

Usage:
    from vset_detect.models import Block

    block = Block.from_json(cache.get(block_key("provider", 42)))
"""

from .chain_models import (
    Block,
    BlockHeader,
    Commit,
    CommitSig,
    Validator,
    parse_timestamp,
    validators_from_json,
    validators_to_json,
)

__all__ = [
    'Block',
    'BlockHeader',
    'Commit',
    'CommitSig',
    'Validator',
    'parse_timestamp',
    'validators_from_json',
    'validators_to_json',
]
