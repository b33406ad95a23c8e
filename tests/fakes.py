"""
Test doubles shared by the test suites.

FakeChainClient answers the same calls as ChainRPCClient from in-memory
dictionaries and counts every call, so tests can assert on RPC traffic.
"""

import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from vset_detect.api import ChainRPCError
from vset_detect.changelog import ValidatorSetChangeEvent
from vset_detect.models import Block, Validator

GENESIS = datetime(2024, 1, 1, tzinfo=timezone.utc)


def block_time(height: int) -> datetime:
    return GENESIS + timedelta(seconds=height)


def make_block(height: int, validators_hash: str, signers: Optional[List[str]] = None) -> Block:
    """Build a block the way the RPC returns it: numbers as strings, nanosecond time."""
    raw = {
        "header": {
            "chain_id": "test-1",
            "height": str(height),
            "time": block_time(height).strftime("%Y-%m-%dT%H:%M:%S") + ".000000001Z",
            "validators_hash": validators_hash,
        },
        "last_commit": {
            "height": str(max(height - 1, 0)),
            "signatures": [{"validator_address": a} for a in (signers or [])],
        },
    }
    return Block.model_validate(raw)


def make_validators(*pairs) -> List[Validator]:
    return [Validator(address=address, voting_power=power) for address, power in pairs]


def make_event(height: int, content_hash: str, old_content_hash: str = "",
               timestamp: Optional[datetime] = None) -> ValidatorSetChangeEvent:
    return ValidatorSetChangeEvent(
        height=height,
        timestamp=timestamp or block_time(height),
        validators_hash=f"VH-{content_hash}",
        old_validators_hash=f"VH-{old_content_hash}" if old_content_hash else "",
        content_hash=content_hash,
        old_content_hash=old_content_hash,
    )


class FakeChainClient:
    """In-memory stand-in for ChainRPCClient."""

    def __init__(self, name: str = "provider", latest_height: int = 0):
        self.name = name
        self.latest_height = latest_height
        self.blocks: Dict[int, Block] = {}
        self.evidence: Dict[int, bytes] = {}
        self.validators: Dict[int, List[Validator]] = {}
        self.failing_heights: Set[int] = set()
        self.block_calls: List[int] = []
        self.validator_calls: List[int] = []
        self._lock = threading.Lock()

    def add_chain(self, hashes_by_height: Dict[int, str], validators_by_hash: Dict[str, List[Validator]]):
        """Register blocks and the validator set belonging to each validators hash."""
        for height, validators_hash in hashes_by_height.items():
            self.blocks[height] = make_block(height, validators_hash)
            self.validators[height] = validators_by_hash[validators_hash]
        self.latest_height = max(self.latest_height, max(hashes_by_height))

    def get_latest_height(self) -> int:
        return self.latest_height

    def get_block(self, height: int):
        with self._lock:
            self.block_calls.append(height)
        if height in self.failing_heights or height not in self.blocks:
            raise ChainRPCError(f"failed to get block {height}")
        return self.blocks[height], self.evidence.get(height)

    def get_validators(self, height: int) -> List[Validator]:
        with self._lock:
            self.validator_calls.append(height)
        if height not in self.validators:
            raise ChainRPCError(f"failed to get validators for block {height}")
        return list(self.validators[height])
