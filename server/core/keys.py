"""Cache key derivation.

Pure and deterministic: identical logical inputs always map to identical
storage keys, regardless of dict construction order.
"""

import hashlib
import json
from typing import Any

from constants import API_ENTRY_NAMESPACE, BLOB_FILE_SUFFIX, IMAGE_META_NAMESPACE, LOCK_NAMESPACE


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _json_key(key: Any) -> str:
    """Object key as JSON would write it (1 -> "1", True -> "true")."""
    return key if isinstance(key, str) else json.dumps(key, default=str)


def _stable_sort(value: Any) -> Any:
    if isinstance(value, dict):
        # Keys are compared as strings so mixed key types never raise
        items = sorted(((_json_key(key), item) for key, item in value.items()), key=lambda kv: kv[0])
        return {key: _stable_sort(item) for key, item in items}
    if isinstance(value, (list, tuple)):
        # Order is meaningful for parameter lists
        return [_stable_sort(item) for item in value]
    return value


def stable_stringify(value: Any) -> str:
    """Canonical JSON: object keys sorted recursively, arrays left in order."""
    return json.dumps(_stable_sort(value), separators=(",", ":"), ensure_ascii=False, default=str)


def generation_tag(generation: int) -> str:
    return f"v{generation}"


def image_meta_key(generation: int, cache_key: str) -> str:
    return f"{IMAGE_META_NAMESPACE}:{generation_tag(generation)}:{sha256_hex(cache_key)}"


def api_entry_key(generation: int, seed: str) -> str:
    return f"{API_ENTRY_NAMESPACE}:{generation_tag(generation)}:{sha256_hex(seed)}"


def lock_key(scope: str, seed: str) -> str:
    return f"{LOCK_NAMESPACE}:{scope}:{sha256_hex(seed)}"


def image_meta_pattern(generation: int) -> str:
    return f"{IMAGE_META_NAMESPACE}:{generation_tag(generation)}:*"


def api_entry_pattern(generation: int) -> str:
    return f"{API_ENTRY_NAMESPACE}:{generation_tag(generation)}:*"


def blob_relative_path(generation: int, cache_key: str) -> str:
    """Relative on-disk location of a blob, namespaced by generation and key hash."""
    return f"{generation_tag(generation)}/{sha256_hex(cache_key)}{BLOB_FILE_SUFFIX}"


def parse_generation_tag(tag: str):
    """``"v12"`` -> 12; anything else -> None."""
    if not tag.startswith("v"):
        return None
    digits = tag[1:]
    if not digits.isdigit():
        return None
    generation = int(digits)
    return generation if generation > 0 else None
