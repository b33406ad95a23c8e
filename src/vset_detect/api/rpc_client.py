"""
Chain RPC Client

This module provides a client for a Tendermint/CometBFT node's JSON-RPC
endpoint. It answers the three questions the pipeline asks of a chain: the
latest height, the block at a height (with any evidence it carries) and the
validator set at a height.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from pydantic import ValidationError

from ..config import DEFAULT_RPC_TIMEOUT
from ..models import Block, Validator

logger = logging.getLogger(__name__)

VALIDATORS_PER_PAGE = 100


class ChainRPCError(Exception):
    """Exception raised for chain RPC related errors."""
    pass


class ChainRPCClient:
    """
    Client for one chain's Tendermint RPC endpoint.

    The underlying ``requests.Session`` is shared by the ingest worker
    threads.
    """

    def __init__(self, rpc_addr: str, name: str, timeout: float = DEFAULT_RPC_TIMEOUT):
        """
        Initialize the RPC client.

        Args:
            rpc_addr: Base URL of the node's RPC server (e.g. http://localhost:26657)
            name: Chain name, used in log and error messages
            timeout: HTTP timeout in seconds for each request
        """
        if not rpc_addr:
            raise ValueError("RPC address is required")

        self.rpc_addr = rpc_addr.rstrip("/")
        self.name = name
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json'
        })

        logger.info(f"Initialized ChainRPCClient for {name} with rpc_addr: {self.rpc_addr}")

    def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Perform a JSON-RPC call over HTTP GET and return its ``result`` object.

        Raises:
            ChainRPCError: If the request fails or the node returns an error
        """
        url = f"{self.rpc_addr}/{method}"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.ConnectionError as e:
            raise ChainRPCError(
                f"Failed to connect to {self.name} RPC at {self.rpc_addr}. "
                f"Check that the node is running and the {self.name.upper()}_ADDR "
                f"variable is correct. Original error: {e}"
            ) from e
        except requests.Timeout as e:
            raise ChainRPCError(
                f"Timeout calling {method} on {self.name} RPC at {self.rpc_addr}. "
                f"Original error: {e}"
            ) from e
        except requests.RequestException as e:
            raise ChainRPCError(f"Request {method} failed on {self.name} RPC: {e}") from e
        except ValueError as e:
            raise ChainRPCError(f"Invalid JSON from {self.name} RPC {method}: {e}") from e

        if not isinstance(data, dict):
            raise ChainRPCError(f"Invalid response format from {method}: expected an object")

        if data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                detail = error.get("data") or error.get("message")
            else:
                detail = error
            raise ChainRPCError(f"{self.name} RPC {method} returned an error: {detail}")

        if "result" not in data:
            raise ChainRPCError(f"Invalid response format from {method}: missing 'result' field")

        return data["result"]

    def get_latest_height(self) -> int:
        """
        Return the node's latest block height.

        Raises:
            ChainRPCError: If the status call fails or returns invalid data
        """
        result = self._call("status")
        try:
            return int(result["sync_info"]["latest_block_height"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainRPCError(f"Invalid status response from {self.name}: {e}") from e

    def get_block(self, height: int) -> Tuple[Block, Optional[bytes]]:
        """
        Fetch the block at ``height``.

        Returns:
            Tuple of (block, evidence) where evidence is the JSON-encoded list of
            evidence carried by the block, or None if it carries none

        Raises:
            ChainRPCError: If the request fails or the block cannot be decoded
        """
        result = self._call("block", {"height": str(height)})

        raw_block = result.get("block")
        if not isinstance(raw_block, dict):
            raise ChainRPCError(f"Invalid block response from {self.name} at height {height}")

        try:
            block = Block.model_validate(raw_block)
        except ValidationError as e:
            raise ChainRPCError(f"Failed to decode block {height} from {self.name}: {e}") from e

        evidence_list = (raw_block.get("evidence") or {}).get("evidence") or []
        if not evidence_list:
            return block, None

        return block, json.dumps(evidence_list).encode("utf-8")

    def get_validators(self, height: int) -> List[Validator]:
        """
        Fetch the full validator set at ``height``, following pagination.

        Raises:
            ChainRPCError: If any page fails or cannot be decoded
        """
        validators: List[Validator] = []
        page = 1

        while True:
            result = self._call("validators", {
                "height": str(height),
                "page": str(page),
                "per_page": str(VALIDATORS_PER_PAGE),
            })

            try:
                batch = [Validator.model_validate(v) for v in result.get("validators") or []]
                total = int(result.get("total", len(batch)))
            except (ValidationError, TypeError, ValueError) as e:
                raise ChainRPCError(
                    f"Failed to decode validators for block {height} from {self.name}: {e}"
                ) from e

            validators.extend(batch)
            if not batch or len(validators) >= total:
                break
            page += 1

        logger.debug(f"Fetched {len(validators)} validators for {self.name} at height {height}")
        return validators

