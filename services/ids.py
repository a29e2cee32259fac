"""Identifier generation for queue items and ingestion jobs."""

import os
from typing import Callable

# URL-safe alphabet of 64 symbols, one byte of entropy maps to one symbol
ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"
DEFAULT_SIZE = 21

EntropySource = Callable[[int], bytes]


def generate_id(prefix: str, entropy: EntropySource = os.urandom, size: int = DEFAULT_SIZE) -> str:
    """Return ``{prefix}-{size random symbols}``.

    The result depends only on the bytes returned by ``entropy`` so callers
    (and tests) control randomness explicitly.
    """
    raw = entropy(size)
    if len(raw) < size:
        raise ValueError(f"Entropy source returned {len(raw)} bytes, expected {size}")
    token = "".join(ALPHABET[b & 63] for b in raw[:size])
    return f"{prefix}-{token}"


def retry_id(entropy: EntropySource = os.urandom) -> str:
    return generate_id("RETRY", entropy)


def pdf_job_id(entropy: EntropySource = os.urandom) -> str:
    return generate_id("PDF", entropy)
