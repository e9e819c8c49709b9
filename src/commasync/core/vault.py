"""Credential vault.

Location passwords are stored encrypted under a credentials directory. Blobs
use the OpenSSL ``enc -aes-256-cbc -pbkdf2`` container (``Salted__`` magic,
8-byte salt, PBKDF2-HMAC-SHA256 deriving both key and IV), keyed by the first
line of a device-local key file. Plaintext is decrypted only at the point of
use and never written or logged.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from commasync.core.errors import DecryptionFailed, VaultUnavailable
from commasync.core.storage import atomic_write_bytes, ensure_directory

logger = logging.getLogger(__name__)

MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 10000

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def credential_filename(protocol: str, role: str, server: str, share_or_port: str | int) -> str:
    """Return the deterministic credential file name for a location."""

    raw = f"{protocol}_{role}_{server}_{share_or_port}"
    return _UNSAFE_NAME_CHARS.sub("_", raw)


class CredentialVault:
    """Encrypts and decrypts location passwords."""

    def __init__(
        self,
        credentials_dir: Path,
        key_file: Path,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        self.credentials_dir = credentials_dir
        self.key_file = key_file
        self.iterations = iterations

    def ensure_available(self) -> None:
        """Fail with ``VaultUnavailable`` unless the key file can be used."""

        self._passphrase()

    def _passphrase(self) -> bytes:
        try:
            content = self.key_file.read_bytes()
        except FileNotFoundError as exc:
            raise VaultUnavailable(f"Key file not found: {self.key_file}") from exc
        except OSError as exc:
            raise VaultUnavailable(f"Key file unreadable: {self.key_file} ({exc})") from exc

        # OpenSSL's "-pass file:" uses the first line only
        passphrase = content.split(b"\n", 1)[0].rstrip(b"\r")
        if not passphrase:
            raise VaultUnavailable(f"Key file is empty: {self.key_file}")
        return passphrase

    def _derive(self, passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE + IV_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        material = kdf.derive(passphrase)
        return material[:KEY_SIZE], material[KEY_SIZE:]

    def encrypt_bytes(self, plaintext: str) -> bytes:
        passphrase = self._passphrase()
        salt = os.urandom(SALT_SIZE)
        key, iv = self._derive(passphrase, salt)

        # a trailing newline keeps blobs interchangeable with `echo | openssl enc`
        data = (plaintext + "\n").encode("utf-8")
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(data) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        return MAGIC + salt + encryptor.update(padded) + encryptor.finalize()

    def decrypt_bytes(self, blob: bytes) -> str:
        passphrase = self._passphrase()
        header = len(MAGIC) + SALT_SIZE
        body = blob[header:]
        if not blob.startswith(MAGIC) or not body or len(body) % IV_SIZE:
            raise DecryptionFailed("Credential blob is malformed")

        key, iv = self._derive(passphrase, blob[len(MAGIC):header])
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            data = unpadder.update(padded) + unpadder.finalize()
            text = data.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecryptionFailed("Credential blob is corrupt or the key file has changed") from exc

        return text[:-1] if text.endswith("\n") else text

    def path_for(self, name: str) -> Path:
        return self.credentials_dir / name

    def encrypt(self, plaintext: str, name: str) -> Path:
        """Encrypt ``plaintext`` into ``credentials_dir/name`` and return the path."""

        blob = self.encrypt_bytes(plaintext)
        ensure_directory(self.credentials_dir)
        path = atomic_write_bytes(self.path_for(name), blob, mode=0o600)
        logger.debug("credential stored path=%s", path)
        return path

    def decrypt(self, ciphertext_path: str | Path) -> str:
        path = Path(ciphertext_path)
        try:
            blob = path.read_bytes()
        except FileNotFoundError as exc:
            raise DecryptionFailed(f"Credential file not found: {path}") from exc
        except OSError as exc:
            raise DecryptionFailed(f"Credential file unreadable: {path} ({exc})") from exc
        return self.decrypt_bytes(blob)

    def delete(self, ciphertext_path: str | Path | None) -> bool:
        if not ciphertext_path:
            return False
        path = Path(ciphertext_path)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("credential removed path=%s", path)
        return True
