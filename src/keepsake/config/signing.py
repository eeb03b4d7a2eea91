"""
Manifest signing for Keepsake.

Manifests are signed with HMAC-SHA256 over their canonical JSON payload,
so any edit to a committed manifest (an entry's digest, its archive name,
the totals) is detected by verification even when the archive files are
replaced to match.

Security Design:
    - 256-bit random key generated on first use
    - Key file permissions set to owner-only (0600)
    - Constant-time comparison via the cryptography HMAC verify call
    - The hash_verified flag is excluded from the payload so marking a
      backup verified does not invalidate its signature

Threat Model:
    - Protects against: tampering with manifests on a shared or removable
      target volume by anyone without the local key
    - Does NOT protect against: an attacker with access to the key file,
      or loss of the key (old backups then verify without a signature check)
"""

import logging
import os
import secrets
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from keepsake.config.settings import Settings
from keepsake.errors import KeepsakeError
from keepsake.storage.models import BackupManifest

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits


class SigningError(KeepsakeError):
    """Raised when the signing key cannot be loaded or created."""

    pass


class ManifestSigner:
    """
    Signs and verifies backup manifests with a local HMAC key.

    Usage:
        signer = ManifestSigner.load_or_create(Path("~/.keepsake/signing.key"))
        manifest.signature = signer.sign(manifest)
        assert signer.verify(manifest)
    """

    def __init__(self, key: bytes) -> None:
        if len(key) < KEY_LENGTH:
            raise SigningError(f"Signing key must be at least {KEY_LENGTH} bytes")
        self._key = key

    @classmethod
    def load_or_create(cls, key_file: Path) -> "ManifestSigner":
        """
        Load the key from key_file, generating it on first use.

        Raises:
            SigningError: If the key file cannot be read or written.
        """
        key_file = Path(key_file).expanduser()
        if key_file.exists():
            try:
                key = key_file.read_bytes()
            except OSError as e:
                raise SigningError(f"Cannot read signing key: {e}", [str(key_file)]) from e
            if len(key) < KEY_LENGTH:
                raise SigningError("Signing key file is truncated", [str(key_file)])
            return cls(key)

        key = secrets.token_bytes(KEY_LENGTH)
        try:
            key_file.parent.mkdir(parents=True, exist_ok=True)
            _write_secure_file(key_file, key)
        except OSError as e:
            raise SigningError(f"Cannot create signing key: {e}", [str(key_file)]) from e
        logger.info(f"Created manifest signing key at {key_file}")
        return cls(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ManifestSigner | None":
        """Signer configured by settings, or None when signing is disabled."""
        if not settings.signing.enabled:
            return None
        return cls.load_or_create(Path(settings.signing.key_file))

    def sign(self, manifest: BackupManifest) -> str:
        """Return the hex signature of a manifest."""
        h = hmac.HMAC(self._key, hashes.SHA256())
        h.update(manifest.signing_payload())
        return h.finalize().hex()

    def verify(self, manifest: BackupManifest) -> bool:
        """Check a manifest's signature against its current contents."""
        if not manifest.signature:
            return False
        try:
            expected = bytes.fromhex(manifest.signature)
        except ValueError:
            return False
        h = hmac.HMAC(self._key, hashes.SHA256())
        h.update(manifest.signing_payload())
        try:
            h.verify(expected)
        except InvalidSignature:
            return False
        return True


def _write_secure_file(path: Path, data: bytes) -> None:
    """
    Write data to file with restrictive permissions.

    Uses atomic write (write to temp, then rename) to prevent
    partial writes from corrupting the file.
    """
    temp_path = path.with_suffix(".tmp")

    try:
        temp_path.write_bytes(data)

        try:
            os.chmod(temp_path, 0o600)
        except OSError:
            # Windows or permission error - continue anyway
            pass

        temp_path.rename(path)

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise
