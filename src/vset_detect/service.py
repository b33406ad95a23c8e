"""
Detect Service

This module wires configuration, RPC clients and the block cache into the
ingest, changelog and consistency operations used by the CLI.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError

from .api import ChainRPCClient
from .changelog import ChangelogBuilder, ChangelogError, ValidatorSetChangeEvent, changelog_path, read_changelog
from .config import PROVIDER_CHAIN, ChainConfig, ConfigError, Settings
from .consistency import ConsistencyReport, check_consistency
from .ingest import IngestEngine, IngestResult, ProgressCallback
from .models import Block
from .store import BlockCache, block_key, evidence_key, height_from_key, prefix
from .store.keys import EVIDENCE

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ChainConfig], ChainRPCClient]


class DetectService:
    """Runs the pipeline operations against one block cache."""

    def __init__(self, settings: Optional[Settings] = None, cache: Optional[BlockCache] = None,
                 client_factory: Optional[ClientFactory] = None, environ=None):
        """
        Initialize the service.

        Args:
            settings: Process-wide settings. If None, read from the environment.
            cache: Block cache. If None, one is opened at ``settings.db_file``.
            client_factory: Builds the RPC client for a chain. Defaults to
                ChainRPCClient with the configured timeout.
            environ: Mapping to read chain configuration from, defaults to os.environ
        """
        self.settings = settings or Settings.from_env(environ)
        self.cache = cache if cache is not None else BlockCache(self.settings.db_file)
        self.client_factory = client_factory or self._default_client
        self.environ = environ

    def _default_client(self, config: ChainConfig) -> ChainRPCClient:
        return ChainRPCClient(config.rpc_addr, config.name, timeout=self.settings.rpc_timeout)

    def chain_config(self, chain: str) -> ChainConfig:
        return ChainConfig.from_env(chain, self.environ)

    def close(self) -> None:
        self.cache.close()

    def ingest(self, chain: str, force: bool = False, to_height: Optional[int] = None,
               progress: Optional[ProgressCallback] = None) -> IngestResult:
        config = self.chain_config(chain)
        engine = IngestEngine(config, self.client_factory(config), self.cache,
                              concurrency=self.settings.concurrency)
        return engine.ingest(to_height=to_height, force=force, progress=progress)

    def ingest_bounds(self, chain: str, to_height: Optional[int] = None) -> Tuple[int, int]:
        """Resolve the height range an ingest run would cover, without fetching."""
        config = self.chain_config(chain)
        engine = IngestEngine(config, self.client_factory(config), self.cache,
                              concurrency=self.settings.concurrency)
        return engine.resolve_range(to_height=to_height)

    def changelog(self, chain: str, to_height: Optional[int] = None) -> List[ValidatorSetChangeEvent]:
        config = self.chain_config(chain)
        builder = ChangelogBuilder(config, self.client_factory(config), self.cache,
                                   output_dir=self.settings.output_dir)
        return builder.build(to_height=to_height)

    def load_changelog(self, chain: str) -> List[ValidatorSetChangeEvent]:
        """Read a previously written changelog artifact for ``chain``."""
        path = changelog_path(self.settings.output_dir, chain)
        if not os.path.exists(path):
            raise ChangelogError(f"no changelog for {chain} at {path}, build it first")
        return read_changelog(path)

    def check(self, consumer: str, to_height: Optional[int] = None, strict: bool = False,
              from_artifacts: bool = False) -> ConsistencyReport:
        """
        Build (or load) the provider and consumer changelogs and compare them.

        The two builds touch disjoint cache namespaces and run concurrently.
        A failure in either one is fatal.
        """
        if consumer == PROVIDER_CHAIN:
            raise ConfigError("consumer name must differ from the provider")

        if from_artifacts:
            provider_events = self.load_changelog(PROVIDER_CHAIN)
            consumer_events = self.load_changelog(consumer)
        else:
            with ThreadPoolExecutor(max_workers=2) as executor:
                provider_future = executor.submit(self.changelog, PROVIDER_CHAIN, to_height)
                consumer_future = executor.submit(self.changelog, consumer, to_height)
                provider_events = provider_future.result()
                consumer_events = consumer_future.result()

        logger.info(f"Found {len(consumer_events)} validator hashes in consumer {consumer}")
        logger.info(f"Found {len(provider_events)} validator hashes in provider")

        return check_consistency(provider_events, consumer_events, strict=strict)

    def _load_block(self, chain: str, height: int) -> Block:
        data = self.cache.get(block_key(chain, height))
        try:
            return Block.from_json(data)
        except ValidationError as e:
            raise ChangelogError(f"failed to decode block {height}: {e}") from e

    def get_block(self, chain: str, height: int) -> Tuple[Block, Optional[str]]:
        """
        Return the cached block at ``height`` and its evidence, if any.

        Raises:
            KeyNotFoundError: If the block is not cached
            ChangelogError: If the cached block cannot be decoded
        """
        block = self._load_block(chain, height)

        key = evidence_key(chain, height)
        evidence = self.cache.get(key).decode("utf-8") if self.cache.has(key) else None
        return block, evidence

    def list_evidence(self, chain: str) -> List[Tuple[int, str]]:
        entries = [
            (height_from_key(key), value.decode("utf-8"))
            for key, value in self.cache.scan_prefix(prefix(chain, EVIDENCE))
        ]
        entries.sort(key=lambda entry: entry[0])
        return entries

    def commit_signers(self, chain: str, height: int) -> Tuple[str, List[str]]:
        """
        Return the validators hash and the last-commit signer addresses of a cached block.

        Raises:
            KeyNotFoundError: If the block is not cached
            ChangelogError: If the block cannot be decoded or has no last commit
        """
        block = self._load_block(chain, height)
        if block.last_commit is None:
            raise ChangelogError("block has no last commit")
        return block.validators_hash, block.signer_addresses()
