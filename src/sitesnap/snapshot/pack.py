"""
Pack and unpack cached snapshots for offline transfer.

An archive is a zip holding:

    meta.json          Snapshot metadata (no local section)
    manifest.json      Manifest
    blocks/{hash}      every block the manifest references
    _pack_meta.json    packing details

Archives may be encrypted with AES-256-GCM; the encrypted file is the
12-byte nonce followed by the ciphertext of the zip.
"""

import getpass
import hashlib
import io
import json
import logging
import os
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import IntegrityError, PackagingError
from .cache import LocalCache
from .models import Manifest, Snapshot, SnapshotState

logger = logging.getLogger(__name__)

PACK_FORMAT_VERSION = 1
NONCE_SIZE = 12
ENCRYPTED_SUFFIX = ".enc"


def _derive_key(key: bytes) -> bytes:
    # AES-256 needs exactly 32 bytes
    if len(key) != 32:
        return hashlib.sha256(key).digest()
    return key


class SnapshotPacker:
    """
    Packs a cached snapshot into a (optionally encrypted) zip archive.
    """

    def __init__(
        self,
        cache: LocalCache,
        snapshot_id: str,
        encrypt: bool = False,
        encryption_key: Optional[bytes] = None,
    ):
        """
        Initialize the packer.

        Args:
            cache: Cache holding the snapshot
            snapshot_id: Snapshot to pack
            encrypt: Whether to encrypt the archive
            encryption_key: Encryption key (required if encrypt=True)
        """
        if encrypt and not encryption_key:
            raise PackagingError("Encryption key is required for encryption", operation="pack")
        self.cache = cache
        self.snapshot = cache.load(snapshot_id)
        self.manifest = cache.load_manifest(snapshot_id)
        self.encrypt = encrypt
        self.encryption_key = encryption_key

    def pack(self, output_path: Path) -> Path:
        """
        Write the archive.

        Returns:
            Path to the created archive (with .enc appended when encrypted)
        """
        output_path = Path(output_path)
        if output_path.suffix != ".zip":
            output_path = output_path.with_suffix(".zip")
        output_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Packing snapshot {self.snapshot.id} to {output_path}")

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("meta.json", json.dumps(self.snapshot.metadata(), indent=2, ensure_ascii=False))
            zf.writestr("manifest.json", json.dumps(self.manifest.to_dict(), indent=2, ensure_ascii=False))
            for block_hash in self.manifest.block_hashes():
                zf.write(self.cache.block_path(block_hash), f"blocks/{block_hash}")

            pack_meta = {
                "format_version": PACK_FORMAT_VERSION,
                "packed_at": datetime.now(timezone.utc).isoformat(),
                "snapshot_id": self.snapshot.id,
                "project": self.snapshot.project,
                "blocks": len(self.manifest.block_hashes()),
                "encrypted": self.encrypt,
            }
            zf.writestr("_pack_meta.json", json.dumps(pack_meta, indent=2))

        data = buffer.getvalue()
        if self.encrypt:
            nonce = os.urandom(NONCE_SIZE)
            data = nonce + AESGCM(_derive_key(self.encryption_key)).encrypt(nonce, data, None)
            output_path = output_path.with_name(output_path.name + ENCRYPTED_SUFFIX)

        with open(output_path, "wb") as f:
            f.write(data)

        logger.info(f"Created archive: {output_path} ({len(data)} bytes)")
        return output_path


class SnapshotUnpacker:
    """
    Unpacks an archive into a local cache, verifying every block.
    """

    def __init__(self, archive_path: Path, decryption_key: Optional[bytes] = None):
        self.archive_path = Path(archive_path)
        self.decryption_key = decryption_key

        if not self.archive_path.exists():
            raise PackagingError(f"Archive not found: {self.archive_path}", operation="unpack")

        self.is_encrypted = self.archive_path.suffix == ENCRYPTED_SUFFIX

    def _read_archive(self) -> bytes:
        data = self.archive_path.read_bytes()
        if not self.is_encrypted:
            return data
        if not self.decryption_key:
            raise PackagingError("Decryption key is required", operation="unpack")
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return AESGCM(_derive_key(self.decryption_key)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise IntegrityError(
                "Archive could not be decrypted (wrong key or corrupted file)",
                operation="unpack",
            ) from e

    def unpack(self, cache: LocalCache) -> Snapshot:
        """
        Import the archived snapshot into ``cache``.

        Raises:
            IntegrityError: If a block or the manifest fails verification
        """
        logger.info(f"Unpacking {self.archive_path}")
        try:
            zf = zipfile.ZipFile(io.BytesIO(self._read_archive()), "r")
        except zipfile.BadZipFile as e:
            raise IntegrityError(f"Not a snapshot archive: {e}", operation="unpack") from e

        with zf:
            snapshot = Snapshot.from_dict(json.loads(zf.read("meta.json")))
            try:
                manifest = Manifest.from_dict(json.loads(zf.read("manifest.json")))
            except (KeyError, TypeError, ValueError) as e:
                raise IntegrityError(
                    f"Archived manifest is malformed: {e}",
                    operation="unpack",
                    snapshot_id=snapshot.id,
                ) from e
            if manifest.content_hash() != snapshot.manifest_hash:
                raise IntegrityError(
                    "Archived manifest does not match its content hash",
                    operation="unpack",
                    snapshot_id=snapshot.id,
                )
            if cache.is_cached(snapshot.id):
                logger.info(f"Snapshot {snapshot.id} already cached")
                return cache.load(snapshot.id)

            for block_hash in manifest.block_hashes():
                if not cache.has_block(block_hash):
                    try:
                        data = zf.read(f"blocks/{block_hash}")
                    except KeyError:
                        raise IntegrityError(
                            f"Archive is missing block {block_hash}",
                            operation="unpack",
                            snapshot_id=snapshot.id,
                        )
                    cache.put_block_bytes(block_hash, data)

        snapshot.state = SnapshotState.LOCALLY_EXISTING
        cache.save(snapshot, manifest, [])
        logger.info(f"Unpacked snapshot {snapshot.id} ({len(manifest)} files)")
        return snapshot


def get_encryption_key(
    key_source: str = "env",
    key_env_var: str = "SITESNAP_ENCRYPTION_KEY",
    key_file_path: Optional[str] = None,
    prompt: bool = False,
) -> Optional[bytes]:
    """
    Get encryption key from configured source.

    Args:
        key_source: Source type ('env', 'file', 'prompt')
        key_env_var: Environment variable name
        key_file_path: Path to key file
        prompt: Whether to prompt interactively

    Returns:
        Encryption key as bytes, or None if not available
    """
    if key_source == "env":
        key_str = os.environ.get(key_env_var)
        if key_str:
            return key_str.encode("utf-8")

    elif key_source == "file" and key_file_path:
        key_path = Path(key_file_path)
        if key_path.exists():
            return key_path.read_bytes().strip()

    elif key_source == "prompt" and prompt:
        key_str = getpass.getpass("Enter encryption key: ")
        if key_str:
            return key_str.encode("utf-8")

    return None
