"""
Chain RPC Integration Package

This package provides the Tendermint RPC client used to fetch blocks and
validator sets from provider and consumer chains.

Usage:
    from vset_detect.api import ChainRPCClient

    client = ChainRPCClient("http://localhost:26657", "provider")
    latest = client.get_latest_height()
"""

from .rpc_client import ChainRPCClient, ChainRPCError

__all__ = [
    'ChainRPCClient',
    'ChainRPCError',
]
