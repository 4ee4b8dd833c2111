"""
Envelope Cipher for Kanuka

Encrypts the project's 32-byte symmetric key under a member's RSA public
key, and recovers it with the matching private key.

Both padding schemes are randomized, so sealing the same key twice under
the same public key never yields the same ciphertext.
"""

import os
from enum import Enum

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .keys import CryptoError


SYMMETRIC_KEY_SIZE = 32


class EncryptError(CryptoError):
    """Raised when a public key cannot carry the project key"""
    pass


class DecryptError(CryptoError):
    """Raised when an envelope cannot be opened"""
    pass


class Padding(Enum):
    """RSA padding scheme used for envelopes."""
    PKCS1V15 = "pkcs1v15"  # Compatible with existing .kanuka grants
    OAEP = "oaep"          # OAEP with SHA-256 and MGF1-SHA-256


DEFAULT_PADDING = Padding.PKCS1V15


def _padding_for(scheme: Padding):
    if scheme == Padding.OAEP:
        return padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        )
    return padding.PKCS1v15()


def generate_symmetric_key() -> bytes:
    """Generate a fresh 32-byte project key."""
    return os.urandom(SYMMETRIC_KEY_SIZE)


def seal(
    symmetric_key: bytes,
    public_key: rsa.RSAPublicKey,
    scheme: Padding = DEFAULT_PADDING,
) -> bytes:
    """
    Encrypt a symmetric key for one recipient.

    Args:
        symmetric_key: The 32-byte project key
        public_key: Recipient's RSA public key
        scheme: RSA padding scheme

    Returns:
        Raw RSA ciphertext bytes

    Raises:
        ValueError: If the symmetric key is not 32 bytes
        EncryptError: If the modulus is too small for the key and padding
    """
    if len(symmetric_key) != SYMMETRIC_KEY_SIZE:
        raise ValueError(
            f"symmetric key must be {SYMMETRIC_KEY_SIZE} bytes, got {len(symmetric_key)}"
        )
    try:
        return public_key.encrypt(symmetric_key, _padding_for(scheme))
    except ValueError:
        raise EncryptError(
            f"a {public_key.key_size}-bit RSA key is too small to seal "
            f"a {SYMMETRIC_KEY_SIZE}-byte key with {scheme.value} padding"
        )


def open_envelope(
    ciphertext: bytes,
    private_key: rsa.RSAPrivateKey,
    scheme: Padding = DEFAULT_PADDING,
) -> bytes:
    """
    Recover the symmetric key from an envelope.

    Args:
        ciphertext: Raw RSA ciphertext
        private_key: Recipient's RSA private key
        scheme: RSA padding scheme the envelope was sealed with

    Returns:
        The 32-byte symmetric key

    Raises:
        DecryptError: On any padding or structural mismatch. The message
            never contains recovered bytes.
    """
    if not ciphertext:
        raise DecryptError("failed to decrypt symmetric key: envelope is empty")

    try:
        plaintext = private_key.decrypt(ciphertext, _padding_for(scheme))
    except ValueError:
        raise DecryptError("failed to decrypt symmetric key")

    if len(plaintext) != SYMMETRIC_KEY_SIZE:
        raise DecryptError("failed to decrypt symmetric key: invalid key length")
    return plaintext
