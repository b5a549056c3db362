"""
Canonical JSON serialization and content hashing.

Provides stable, platform-independent serialization so that the same site
state always produces the same hashes. The canonicalization ensures:
- Keys are sorted recursively
- Unicode is normalized (NFC)
- No insignificant whitespace
- Binary values are tagged base64 objects
- Consistent null handling
"""

import base64
import hashlib
import json
import unicodedata
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Optional

HASH_ALGORITHM = "sha256"
CHUNK_SIZE = 1024 * 1024
BYTES_TAG = "$b64"

EMPTY_HASH = hashlib.sha256(b"").hexdigest()


def canonicalize(obj: Any, normalize_unicode: bool = True) -> str:
    """
    Canonicalize a Python object to a stable JSON string.

    Args:
        obj: The object to canonicalize
        normalize_unicode: NFC-normalize strings (off for data payloads
            such as database rows)

    Returns:
        Canonical JSON string
    """
    return json.dumps(
        _normalize_for_canonical(obj, normalize_unicode),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=_canonical_default,
    )


def _normalize_for_canonical(obj: Any, nfc: bool = True) -> Any:
    """
    Recursively normalize an object for canonical serialization.

    - Normalizes unicode strings (NFC) when nfc is set
    - Tags bytes as {"$b64": ...}
    - Recursively processes dicts and lists
    """
    if obj is None:
        return None

    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj) if nfc else obj

    if isinstance(obj, bool):
        # bool is a subclass of int
        return obj

    if isinstance(obj, (int, float)):
        return obj

    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {BYTES_TAG: base64.b64encode(bytes(obj)).decode("ascii")}

    if isinstance(obj, dict):
        return {
            _normalize_for_canonical(k, nfc): _normalize_for_canonical(v, nfc)
            for k, v in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        return [_normalize_for_canonical(item, nfc) for item in obj]

    if hasattr(obj, "to_dict"):
        return _normalize_for_canonical(obj.to_dict(), nfc)

    if hasattr(obj, "isoformat"):
        return obj.isoformat()

    # Decimal, UUID and friends
    return _normalize_for_canonical(str(obj), nfc)


def _canonical_default(obj: Any) -> Any:
    """Default handler for JSON serialization of non-standard types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return str(obj)


def decode_value(value: Any) -> Any:
    """Inverse of the bytes tagging applied by canonicalize()."""
    if isinstance(value, dict) and set(value.keys()) == {BYTES_TAG}:
        return base64.b64decode(value[BYTES_TAG])
    return value


def hash_bytes(data: bytes) -> str:
    """Hex-encoded SHA256 of a byte string."""
    return hashlib.sha256(data).hexdigest()


def hash_stream(stream: BinaryIO, sink: Optional[BinaryIO] = None) -> Dict[str, Any]:
    """
    Hash a binary stream in chunks, optionally copying it to a sink.

    Returns:
        Dict with 'hash' and 'size'
    """
    digest = hashlib.sha256()
    size = 0
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        digest.update(chunk)
        size += len(chunk)
        if sink is not None:
            sink.write(chunk)
    return {"hash": digest.hexdigest(), "size": size}


def hash_file(path: Path) -> str:
    """Hex-encoded SHA256 of a file's content."""
    with open(path, "rb") as f:
        return hash_stream(f)["hash"]


def build_manifest_hash_input(
    entries: Iterable[Dict[str, Any]],
    db_dump_hash: Optional[str],
) -> Dict[str, Any]:
    """
    Build the hash input object for a manifest.

    This is the semantic identity of a snapshot's content: the sorted entry
    list plus the database export hash. Descriptive metadata (project,
    description, timestamps) is not part of it.
    """
    return {
        "algorithm": HASH_ALGORITHM,
        "entries": sorted(entries, key=lambda e: e["path"]),
        "db_dump_hash": db_dump_hash,
    }


def compute_manifest_hash(
    entries: Iterable[Dict[str, Any]],
    db_dump_hash: Optional[str],
) -> str:
    """
    Compute the top-level content hash of a manifest.

    Args:
        entries: Manifest entries as dicts (path, hash, size, mode)
        db_dump_hash: Hash of the database export block, if any

    Returns:
        Hex-encoded SHA256 hash string
    """
    canonical_str = canonicalize(build_manifest_hash_input(entries, db_dump_hash))
    return hashlib.sha256(canonical_str.encode("utf-8")).hexdigest()
