"""
Ingest Engine

Fetches blocks for a height range from a chain's RPC endpoint and stores them
in the block cache. Heights are independent of each other, so they are
fetched by a bounded pool of worker threads in no particular order.

Already cached heights are skipped unless ``force`` is set, which makes a
second run over the same range cheap and lets an interrupted run resume: only
the heights still missing are fetched again.
"""

import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .api import ChainRPCClient
from .config import DEFAULT_CONCURRENCY, ChainConfig, ConfigError
from .store import BlockCache, block_key, evidence_key

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

# Futures kept in flight per worker; heights beyond that wait to be submitted
SUBMIT_WINDOW = 4


@dataclass
class IngestResult:
    """Container for the outcome of one ingest run."""
    chain: str
    from_height: int
    to_height: int
    indexed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.to_height - self.from_height + 1

    @property
    def ok(self) -> bool:
        return not self.failed


def index_block(cache: BlockCache, client: ChainRPCClient, chain: str, height: int,
                force: bool = False) -> bool:
    """
    Fetch and cache the block at ``height`` unless it is already cached.

    Returns:
        True if the block was fetched and stored, False if it was skipped

    Raises:
        ChainRPCError: If the block cannot be fetched
        CacheError: If the block or its evidence cannot be stored
    """
    key = block_key(chain, height)

    if not force and cache.has(key):
        logger.debug(f"Skipping block {height}, key already exists: {key}")
        return False

    block, evidence = client.get_block(height)
    cache.put(key, block.to_json())

    if evidence is not None:
        cache.put(evidence_key(chain, height), evidence)
        logger.info(f"Block {height} on {chain} carries evidence")

    logger.info(f"Indexed block {height}")
    return True


class IngestEngine:
    """Bounded-concurrency block fetcher for one chain."""

    def __init__(self, config: ChainConfig, client: ChainRPCClient, cache: BlockCache,
                 concurrency: int = DEFAULT_CONCURRENCY):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.config = config
        self.client = client
        self.cache = cache
        self.concurrency = concurrency

    def resolve_range(self, from_height: Optional[int] = None,
                      to_height: Optional[int] = None) -> tuple:
        """
        Check the requested range against the chain's latest height.

        Raises:
            ConfigError: If the range starts beyond the latest height, ends
                beyond it, or is empty
        """
        latest = self.client.get_latest_height()
        start = self.config.min_height if from_height is None else from_height
        end = latest if to_height is None else to_height

        if start > latest:
            raise ConfigError(
                f"minimum height {start} of {self.config.name} exceeds latest block {latest}"
            )
        if end > latest:
            raise ConfigError(
                f"requested height {end} of {self.config.name} exceeds latest block {latest}"
            )
        if start > end:
            raise ConfigError(f"invalid height range {start}..{end}")

        logger.info(f"Min height: {start}")
        logger.info(f"Latest block: {latest}")
        return start, end

    def ingest(self, from_height: Optional[int] = None, to_height: Optional[int] = None,
               force: bool = False, progress: Optional[ProgressCallback] = None) -> IngestResult:
        """
        Ensure every height in ``[from_height, to_height]`` is cached.

        A failure at one height is logged and recorded in the result; the
        other heights are unaffected. Nothing is retried.

        Args:
            from_height: First height, defaults to the configured minimum
            to_height: Last height, defaults to the chain's latest height
            force: Refetch heights that are already cached
            progress: Called with each height once it is finished

        Returns:
            IngestResult with the indexed, skipped and failed heights
        """
        start, end = self.resolve_range(from_height, to_height)
        result = IngestResult(chain=self.config.name, from_height=start, to_height=end)
        window = self.concurrency * SUBMIT_WINDOW

        def collect(future, height):
            try:
                fetched = future.result()
            except Exception as e:
                logger.error(f"failed to index block {height}: {e}")
                result.failed[height] = str(e)
            else:
                (result.indexed if fetched else result.skipped).append(height)
            if progress is not None:
                progress(height)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            pending = {}
            for height in range(start, end + 1):
                if len(pending) >= window:
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        collect(future, pending.pop(future))
                future = executor.submit(index_block, self.cache, self.client, self.config.name, height, force)
                pending[future] = height

            for future in as_completed(pending):
                collect(future, pending[future])

        result.indexed.sort()
        result.skipped.sort()

        logger.info(
            f"Ingest of {self.config.name} finished: {len(result.indexed)} indexed, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed"
        )
        return result
