"""
Encryption of stored OAuth secrets and one-way password hashing.

Ciphertext layout: base64(salt[64] || iv[16] || AES-256-CBC(PKCS7(plaintext))).
The AES key is derived per call from the master key and the salt with
PBKDF2-HMAC-SHA512, so equal plaintexts never produce equal ciphertexts.
"""
import base64
import binascii
import secrets

import bcrypt
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from drivebot_auth.errors import CorruptedCiphertext

SALT_LENGTH = 64
IV_LENGTH = 16
KEY_LENGTH = 32
KDF_ITERATIONS = 100_000
MIN_MASTER_KEY_LENGTH = 32

_BLOCK_BYTES = algorithms.AES.block_size // 8


class CredentialCipher:
    """Symmetric encrypt/decrypt of secrets under a process-wide master key."""

    def __init__(self, master_key: str):
        if not master_key or len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ValueError(f"Encryption key must be at least {MIN_MASTER_KEY_LENGTH} characters")
        self._master_key = master_key.encode("utf-8")

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, plaintext: str) -> str:
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        key = self._derive_key(salt)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        body = encryptor.update(padded) + encryptor.finalize()

        return base64.b64encode(salt + iv + body).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Reverse encrypt(). Raises CorruptedCiphertext on any malformed or foreign input."""
        if not isinstance(ciphertext, str) or not ciphertext:
            raise CorruptedCiphertext("ciphertext is empty or not a string")
        try:
            combined = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CorruptedCiphertext("ciphertext is not valid base64") from e

        body = combined[SALT_LENGTH + IV_LENGTH:]
        if not body or len(body) % _BLOCK_BYTES != 0:
            raise CorruptedCiphertext("ciphertext is truncated")

        salt = combined[:SALT_LENGTH]
        iv = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        key = self._derive_key(salt)
        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            raw = unpadder.update(padded) + unpadder.finalize()
            return raw.decode("utf-8")
        except ValueError as e:
            # Bad padding or non-UTF-8 output: wrong key or tampered data
            raise CorruptedCiphertext("ciphertext failed to decrypt") from e


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash
        return False


def generate_random_string(nbytes: int = 32) -> str:
    """Hex string from nbytes of CSPRNG output."""
    return secrets.token_hex(nbytes)
