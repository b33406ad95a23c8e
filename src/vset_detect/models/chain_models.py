"""
Chain Models

This module defines Pydantic models for the Tendermint RPC data the tool
consumes: block headers, last-commit signatures and validators. Only the
fields the pipeline needs are kept; everything else in the RPC payload is
ignored.

Tendermint encodes 64-bit integers as JSON strings, which these models coerce
back to integers.
"""

import re
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

_RFC3339 = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}:\d{2})$"
)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp as emitted by Tendermint.

    Block times carry nanosecond precision, which is truncated to
    microseconds.

    Raises:
        ValueError: If the string is not a valid RFC 3339 timestamp
    """
    match = _RFC3339.match(value.strip())
    if not match:
        raise ValueError(f"invalid timestamp: {value!r}")

    fraction = (match.group("fraction") or "0")[:6].ljust(6, "0")
    offset = match.group("offset")
    if offset == "Z":
        offset = "+00:00"

    parsed = datetime.fromisoformat(f"{match.group('base')}.{fraction}{offset}")
    return parsed.astimezone(timezone.utc)


class CommitSig(BaseModel):
    """One signature of a block's last commit."""
    model_config = ConfigDict(extra="ignore")

    validator_address: str = Field(default="", description="Signer address, empty for absent votes")

    @field_validator("validator_address", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or ""


class Commit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    height: int = Field(default=0, ge=0)
    signatures: List[CommitSig] = Field(default_factory=list)


class BlockHeader(BaseModel):
    """
    Block header fields used for change detection.

    Attributes:
        chain_id: Chain identifier reported by the node
        height: Block height
        time: Block time (UTC)
        validators_hash: Chain-native hash of the active validator set
    """
    model_config = ConfigDict(extra="ignore")

    chain_id: str = Field(default="", description="Chain identifier")
    height: int = Field(..., ge=0, description="Block height")
    time: datetime = Field(..., description="Block time")
    validators_hash: str = Field(..., min_length=1, description="Chain-native validators hash")

    @field_validator("time", mode="before")
    @classmethod
    def validate_time(cls, v):
        """Accept RFC 3339 strings with nanosecond precision."""
        if isinstance(v, str):
            return parse_timestamp(v)
        return v


class Block(BaseModel):
    """
    Cached block.

    This is the unit stored under ``{chain}:block:{height}``. Evidence is kept
    separately under the evidence key, so it is not part of the model.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    header: BlockHeader
    last_commit: Optional[Commit] = None

    @property
    def height(self) -> int:
        return self.header.height

    @property
    def time(self) -> datetime:
        return self.header.time

    @property
    def validators_hash(self) -> str:
        return self.header.validators_hash

    def signer_addresses(self) -> List[str]:
        """Return the sorted, non-empty validator addresses of the last commit."""
        if self.last_commit is None:
            return []
        return sorted(sig.validator_address for sig in self.last_commit.signatures if sig.validator_address)

    def to_json(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "Block":
        return cls.model_validate_json(data)


class Validator(BaseModel):
    """
    A validator with its voting power at a given height.

    Public keys and proposer priorities are dropped on purpose: only address
    and power take part in the content hash.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    address: str = Field(..., description="Validator address")
    voting_power: int = Field(..., ge=0, description="Voting power")


_VALIDATOR_LIST = TypeAdapter(List[Validator])


def validators_to_json(validators: List[Validator]) -> bytes:
    """Serialize a validator list for the ``{chain}:validators:{height}`` cache entry."""
    return _VALIDATOR_LIST.dump_json(list(validators))


def validators_from_json(data: bytes) -> List[Validator]:
    return _VALIDATOR_LIST.validate_json(data)
