"""
vset-detect

Detects validator set replication problems between a provider chain and its
consumer chains:

- ingest: fetch and cache blocks with bounded concurrency
- changelog: reduce cached blocks to the ordered validator set changes
- consistency: check a consumer changelog against the provider's
"""

from .changelog import ChangelogBuilder, ChangelogError, ValidatorSetChangeEvent, content_hash
from .config import ChainConfig, ConfigError, Settings
from .consistency import ConsistencyError, ConsistencyReport, check_consistency
from .ingest import IngestEngine, IngestResult, index_block

__version__ = "0.1.0"

__all__ = [
    'ChainConfig',
    'ChangelogBuilder',
    'ChangelogError',
    'ConfigError',
    'ConsistencyError',
    'ConsistencyReport',
    'IngestEngine',
    'IngestResult',
    'Settings',
    'ValidatorSetChangeEvent',
    'check_consistency',
    'content_hash',
    'index_block',
]
