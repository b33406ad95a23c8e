"""
Changelog Builder

This module turns a chain's cached blocks into the ordered list of validator
set changes seen on that chain.

Blocks are scanned in ascending height order from the configured minimum
height. Whenever a block's validators hash differs from the previous block's,
the validator set at that height is looked up and a
:class:`ValidatorSetChangeEvent` is emitted. The scan stops at the first
height that is not cached, so it only ever covers the contiguous range left
by previous ingest runs.

Validator sets are compared across chains through their content hash (see
:func:`content_hash`), since the chain-native validators hash is computed
differently on each chain.
"""

import csv
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from pydantic import ValidationError

from .api import ChainRPCClient, ChainRPCError
from .config import ChainConfig, ConfigError
from .models import Block, Validator, validators_from_json, validators_to_json
from .store import BlockCache, CacheError, KeyNotFoundError, block_key, validators_key

logger = logging.getLogger(__name__)

CONTENT_HASH_SEPARATOR = ";"
PROGRESS_INTERVAL = 10000


class ChangelogError(Exception):
    """Exception raised when a changelog cannot be built."""
    pass


@dataclass(frozen=True)
class ValidatorSetChangeEvent:
    """
    A validator set transition detected on one chain.

    Attributes:
        height: Height at which the new set became active
        timestamp: Block time at that height
        validators_hash: Chain-native hash of the new set
        old_validators_hash: Chain-native hash of the previous set ("" for the first event)
        content_hash: Content hash of the new set
        old_content_hash: Content hash of the previous set ("" for the first event)
    """
    height: int
    timestamp: datetime
    validators_hash: str
    old_validators_hash: str
    content_hash: str
    old_content_hash: str

    def to_row(self) -> List[str]:
        return [
            str(self.height),
            self.timestamp.isoformat(),
            self.validators_hash,
            self.old_validators_hash,
            self.content_hash,
            self.old_content_hash,
        ]


def content_hash(validators: Iterable[Validator]) -> str:
    """
    Compute the order-independent content hash of a validator set.

    Each validator is rendered as ``address:power``; the rendered strings are
    sorted, joined with ``;`` and MD5-hashed.
    """
    rendered = sorted(f"{v.address}:{v.voting_power}" for v in validators)
    joined = CONTENT_HASH_SEPARATOR.join(rendered)
    return hashlib.md5(joined.encode("utf-8")).hexdigest()


def changelog_path(output_dir: str, chain: str) -> str:
    return os.path.join(output_dir, f"validatorset-{chain}.csv")


class ChangelogBuilder:
    """Sequential change detector for one chain."""

    def __init__(self, config: ChainConfig, client: ChainRPCClient, cache: BlockCache,
                 output_dir: str = "."):
        """
        Args:
            config: Chain identity; its RPC address and minimum height are required
            client: RPC client for validator sets missing from the cache
            cache: Block cache filled by a prior ingest run
            output_dir: Directory receiving ``validatorset-{chain}.csv``

        Raises:
            ConfigError: If the RPC address or minimum height is missing
        """
        if not config.rpc_addr:
            raise ConfigError(f"missing RPC address for chain {config.name}")
        if config.min_height is None:
            raise ConfigError(f"missing minimum height for chain {config.name}")

        self.config = config
        self.client = client
        self.cache = cache
        self.output_dir = output_dir

    @property
    def chain(self) -> str:
        return self.config.name

    def validators_at(self, height: int) -> List[Validator]:
        """
        Return the validator set at ``height``, fetching and caching it on a miss.

        Raises:
            ChangelogError: If the set cannot be fetched, decoded or stored
        """
        key = validators_key(self.chain, height)
        try:
            return validators_from_json(self.cache.get(key))
        except KeyNotFoundError:
            pass
        except ValidationError as e:
            raise ChangelogError(f"failed to decode validators for block {height}: {e}") from e
        except CacheError as e:
            raise ChangelogError(f"failed to read validators for block {height}: {e}") from e

        try:
            validators = self.client.get_validators(height)
        except ChainRPCError as e:
            raise ChangelogError(f"failed to get validator set at height {height}: {e}") from e

        try:
            self.cache.put(key, validators_to_json(validators))
        except CacheError as e:
            raise ChangelogError(f"failed to save validators for block {height}: {e}") from e

        return validators

    def _load_block(self, height: int) -> Optional[Block]:
        key = block_key(self.chain, height)
        try:
            data = self.cache.get(key)
        except KeyNotFoundError:
            return None
        except CacheError as e:
            raise ChangelogError(f"failed to get block {height}: {e}") from e

        try:
            return Block.from_json(data)
        except ValidationError as e:
            raise ChangelogError(f"failed to parse block: {key}: {e}") from e

    def build(self, to_height: Optional[int] = None,
              from_height: Optional[int] = None) -> List[ValidatorSetChangeEvent]:
        """
        Scan the cached blocks and return the validator set changes in height order.

        The events are also written to ``validatorset-{chain}.csv`` as they are
        found, so a partial file is left behind if the build fails midway.

        Args:
            to_height: Last height to scan, defaults to the chain's latest height
            from_height: First height to scan, defaults to the configured minimum

        Raises:
            ConfigError: If the upper bound is below the minimum height
            ChangelogError: If a block or validator set cannot be read
        """
        start = self.config.min_height if from_height is None else from_height

        if to_height is None:
            try:
                to_height = self.client.get_latest_height()
            except ChainRPCError as e:
                raise ChangelogError(f"failed to get latest block height: {e}") from e

        if to_height < start:
            raise ConfigError(
                f"latest block {to_height} of {self.chain} is less than minimum height {start}"
            )

        events: List[ValidatorSetChangeEvent] = []
        last_validators_hash = ""
        last_content_hash = ""

        os.makedirs(self.output_dir, exist_ok=True)
        path = changelog_path(self.output_dir, self.chain)

        with open(path, "w", newline="") as f:
            writer = csv.writer(f, lineterminator="\n")

            for height in range(start, to_height + 1):
                if height % PROGRESS_INTERVAL == 0:
                    logger.info(f"Processing block {height} on chain {self.chain}")

                block = self._load_block(height)
                if block is None:
                    logger.info(f"No cached block at height {height} on {self.chain}, stopping scan")
                    break

                if block.validators_hash == last_validators_hash:
                    continue

                logger.debug(f"Found new validator set: {block.validators_hash} at height {block.height}")

                new_content_hash = content_hash(self.validators_at(block.height))
                event = ValidatorSetChangeEvent(
                    height=block.height,
                    timestamp=block.time,
                    validators_hash=block.validators_hash,
                    old_validators_hash=last_validators_hash,
                    content_hash=new_content_hash,
                    old_content_hash=last_content_hash,
                )

                writer.writerow(event.to_row())
                f.flush()
                events.append(event)

                last_validators_hash = block.validators_hash
                last_content_hash = new_content_hash

        logger.info(f"Found {len(events)} validator set changes on {self.chain}, written to {path}")
        return events


def read_changelog(path: str) -> List[ValidatorSetChangeEvent]:
    """Load events back from a ``validatorset-{chain}.csv`` file."""
    events = []
    with open(path, newline="") as f:
        for row in csv.reader(f):
            if not row:
                continue
            height, timestamp, vh, old_vh, ch, old_ch = row
            events.append(ValidatorSetChangeEvent(
                height=int(height),
                timestamp=datetime.fromisoformat(timestamp),
                validators_hash=vh,
                old_validators_hash=old_vh,
                content_hash=ch,
                old_content_hash=old_ch,
            ))
    return events
