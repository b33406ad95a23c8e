"""Cache key layout: ``{chain}:{kind}:{height}``."""

BLOCK = "block"
EVIDENCE = "evidence"
VALIDATORS = "validators"

KINDS = (BLOCK, EVIDENCE, VALIDATORS)


def _key(chain: str, kind: str, height: int) -> str:
    return f"{chain}:{kind}:{height}"


def block_key(chain: str, height: int) -> str:
    return _key(chain, BLOCK, height)


def evidence_key(chain: str, height: int) -> str:
    return _key(chain, EVIDENCE, height)


def validators_key(chain: str, height: int) -> str:
    return _key(chain, VALIDATORS, height)


def prefix(chain: str, kind: str) -> str:
    """Return the scan prefix for every entry of one kind on one chain."""
    if kind not in KINDS:
        raise ValueError(f"unknown key kind: {kind}")
    return f"{chain}:{kind}:"


def height_from_key(key: str) -> int:
    """
    Extract the height from a cache key.

    Raises:
        ValueError: If the key does not follow the ``chain:kind:height`` layout
    """
    parts = key.rsplit(":", 2)
    if len(parts) != 3 or parts[1] not in KINDS:
        raise ValueError(f"malformed cache key: {key}")
    return int(parts[2])
