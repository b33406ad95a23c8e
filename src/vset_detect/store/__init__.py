"""
Block Cache Package

Persistent key-value cache for blocks, evidence and validator sets fetched
from each chain, plus the helpers that build its keys.
"""

from .database import BlockCache, CacheError, KeyNotFoundError
from .keys import block_key, evidence_key, height_from_key, prefix, validators_key

__all__ = [
    'BlockCache',
    'CacheError',
    'KeyNotFoundError',
    'block_key',
    'evidence_key',
    'height_from_key',
    'prefix',
    'validators_key',
]
