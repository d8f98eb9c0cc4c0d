"""Screenshot encryption and output path validation.

Every envelope gets a fresh random salt and nonce. The AES-256-GCM key is
derived from the operator secret and the salt with PBKDF2-HMAC-SHA256, so two
envelopes made with the same secret never share a key.
"""

from __future__ import annotations

import base64
import os
import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath, PureWindowsPath

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field

from electron_pilot.logging import Loggers
from electron_pilot.security.errors import EncryptionError, PathValidationError

logger = Loggers.security()

ALGORITHM = "aes-256-gcm"
FALLBACK_ALGORITHM = "base64"
KDF_ITERATIONS = 100_000
SALT_BYTES = 16
NONCE_BYTES = 12
KEY_BYTES = 32

FORBIDDEN_POSIX_DIRS: tuple[str, ...] = ("/etc", "/sys", "/proc", "/dev", "/boot")
FORBIDDEN_WINDOWS_DIRS: tuple[str, ...] = (
    "c:\\windows",
    "c:\\program files",
    "c:\\program files (x86)",
    "c:\\programdata",
)
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]")


class EncryptedScreenshot(BaseModel):
    """Persisted screenshot envelope.

    encrypted is False only for the base64 fallback, in which case
    encrypted_data holds base64 text and iv/salt are empty.
    """

    encrypted_data: str
    iv: str = ""
    salt: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    algorithm: str = ALGORITHM
    encrypted: bool = True

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "EncryptedScreenshot":
        return cls.model_validate_json(data)


class ScreenshotEncryptor:
    """Encrypts screenshot bytes under an operator secret."""

    def __init__(self, secret: str, iterations: int = KDF_ITERATIONS):
        if not secret:
            raise EncryptionError("An encryption secret is required")
        self._secret = secret.encode("utf-8")
        self.iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._secret)

    def encrypt(self, data: bytes) -> EncryptedScreenshot:
        """Encrypt data into a new envelope.

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            salt = os.urandom(SALT_BYTES)
            nonce = os.urandom(NONCE_BYTES)
            ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, bytes(data), None)
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Screenshot encryption failed: {e}") from e

        return EncryptedScreenshot(
            encrypted_data=ciphertext.hex(),
            iv=nonce.hex(),
            salt=salt.hex(),
        )

    def decrypt(self, envelope: EncryptedScreenshot) -> bytes:
        """Recover the plaintext of an envelope.

        Raises:
            EncryptionError: On a wrong secret, tampering, or a malformed envelope.
        """
        if not envelope.encrypted:
            try:
                return base64.b64decode(envelope.encrypted_data, validate=True)
            except ValueError as e:
                raise EncryptionError(f"Malformed fallback envelope: {e}") from e

        if envelope.algorithm != ALGORITHM:
            raise EncryptionError(f"Unsupported algorithm: {envelope.algorithm}")

        try:
            salt = bytes.fromhex(envelope.salt)
            nonce = bytes.fromhex(envelope.iv)
            ciphertext = bytes.fromhex(envelope.encrypted_data)
            return AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise EncryptionError("Screenshot authentication failed (wrong key or tampered data)") from e
        except ValueError as e:
            raise EncryptionError(f"Malformed envelope: {e}") from e

    def encrypt_or_fallback(self, data: bytes) -> EncryptedScreenshot:
        """Encrypt, degrading to a plain base64 envelope if encryption throws."""
        try:
            return self.encrypt(data)
        except EncryptionError as e:
            logger.warning("screenshot_encryption_fallback", error=str(e), size=len(data))
            return plain_envelope(data)


def plain_envelope(data: bytes) -> EncryptedScreenshot:
    """Unencrypted base64 envelope."""
    return EncryptedScreenshot(
        encrypted_data=base64.b64encode(data).decode("ascii"),
        algorithm=FALLBACK_ALGORITHM,
        encrypted=False,
    )


def _is_under(path: str, root: str, sep: str) -> bool:
    return path == root or path.startswith(root.rstrip(sep) + sep)


def validate_output_path(path: str | Path) -> Path:
    """Reject unsafe output paths before any filesystem write.

    Rejects traversal (``..`` segments), a leading ``~``, and paths that
    resolve under system directories.

    Returns:
        The resolved path.

    Raises:
        PathValidationError: If the path is not acceptable.
    """
    raw = str(path).strip()
    if not raw:
        raise PathValidationError("Output path must not be empty")
    if "\x00" in raw:
        raise PathValidationError("Output path contains a null byte")
    if raw.startswith("~"):
        raise PathValidationError("Output path must not start with '~'")

    parts = PureWindowsPath(raw).parts if ("\\" in raw or _WINDOWS_DRIVE.match(raw)) else PurePosixPath(raw).parts
    if ".." in parts:
        raise PathValidationError("Output path must not contain '..'")

    if _WINDOWS_DRIVE.match(raw) or raw.startswith("\\\\"):
        lowered = raw.replace("/", "\\").lower()
        for root in FORBIDDEN_WINDOWS_DIRS:
            if _is_under(lowered, root, "\\"):
                raise PathValidationError(f"Output path is inside a system directory: {root}")
        return Path(raw)

    resolved = Path(raw).resolve()
    for candidate in {str(Path(raw).absolute()), str(resolved)}:
        for root in FORBIDDEN_POSIX_DIRS:
            if _is_under(candidate, root, "/"):
                raise PathValidationError(f"Output path is inside a system directory: {root}")
    return resolved
