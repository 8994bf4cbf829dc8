"""Utility modules for the approval kernel."""

from approval_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    to_jsonable,
)

__all__ = [
    "hash_payload",
    "canonicalize_json",
    "to_jsonable",
]
