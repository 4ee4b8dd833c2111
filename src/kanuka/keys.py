"""
Key Codec for Kanuka

Parses and serializes the RSA keys that protect a project's shared
symmetric key.

Features:
- Public keys in PEM SubjectPublicKeyInfo, PEM PKCS#1 and OpenSSH wire format
- Private keys in PEM PKCS#1 and PKCS#8 (optionally password protected)
- Canonical PEM output for on-disk public key records
- CRLF / LF / CR line-ending normalization before decode
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


DEFAULT_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537

SSH_RSA_PREFIX = "ssh-rsa"
PEM_PREFIX = "-----BEGIN"
PEM_PUBLIC_TYPES = ("PUBLIC KEY", "RSA PUBLIC KEY")
PEM_PRIVATE_TYPES = ("RSA PRIVATE KEY", "PRIVATE KEY", "ENCRYPTED PRIVATE KEY")


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class InvalidKeyFormatError(CryptoError):
    """Raised when key material matches no supported format"""
    pass


class KeyNotFoundError(CryptoError):
    """Raised when a key file is not found"""
    pass


@dataclass
class KeyPair:
    """RSA key pair container"""
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey

    @property
    def key_size(self) -> int:
        return self.public_key.key_size


def normalize_key_text(raw: Union[bytes, str]) -> str:
    """
    Decode key material and normalize line endings.

    Windows (CRLF), classic Mac (CR) and mixed endings all become LF,
    and surrounding whitespace is stripped.

    Raises:
        InvalidKeyFormatError: If bytes are not valid UTF-8
    """
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidKeyFormatError("key data is not valid text")
    else:
        text = raw
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.strip()


def _pem_block_type(text: str) -> str:
    """Return the label of the first PEM block, e.g. 'PUBLIC KEY'."""
    first_line = text.split("\n", 1)[0]
    label = first_line[len(PEM_PREFIX):].strip()
    if label.endswith("-----"):
        label = label[:-5]
    return label.strip()


def _parse_ssh_public_key(text: str) -> rsa.RSAPublicKey:
    # Only the type and base64 fields matter; a trailing comment is ignored
    parts = text.split()
    if len(parts) < 2:
        raise InvalidKeyFormatError("invalid SSH public key format")
    if parts[0] != SSH_RSA_PREFIX:
        raise InvalidKeyFormatError(
            f"unsupported SSH key type '{parts[0]}', only RSA is supported"
        )

    try:
        key = serialization.load_ssh_public_key(f"{parts[0]} {parts[1]}".encode())
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidKeyFormatError(f"failed to decode SSH key: {e}")

    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidKeyFormatError("SSH key is not an RSA key")
    return key


def _parse_pem_public_key(text: str) -> rsa.RSAPublicKey:
    block_type = _pem_block_type(text)
    if block_type not in PEM_PUBLIC_TYPES:
        raise InvalidKeyFormatError(f"PEM block '{block_type}' is not a public key")

    try:
        key = serialization.load_pem_public_key(text.encode() + b"\n")
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidKeyFormatError(f"failed to parse PEM public key: {e}")

    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidKeyFormatError("PEM key is not an RSA public key")
    return key


def parse_public_key(raw: Union[bytes, str]) -> rsa.RSAPublicKey:
    """
    Parse an RSA public key from PEM or OpenSSH text.

    Args:
        raw: Key material, either 'ssh-rsa <base64> [comment]' or a
            PEM block ('PUBLIC KEY' or 'RSA PUBLIC KEY')

    Returns:
        RSAPublicKey

    Raises:
        InvalidKeyFormatError: If the input is empty, uses an unknown
            framing, or fails structural decoding
    """
    text = normalize_key_text(raw)
    if not text:
        raise InvalidKeyFormatError("public key text cannot be empty")

    if text.startswith("ssh-"):
        return _parse_ssh_public_key(text)

    if text.startswith(PEM_PREFIX):
        return _parse_pem_public_key(text)

    raise InvalidKeyFormatError(
        "public key text does not appear to be in PEM or SSH format"
    )


def parse_private_key(
    raw: Union[bytes, str],
    password: Optional[str] = None,
) -> rsa.RSAPrivateKey:
    """
    Parse an RSA private key from PEM data.

    Args:
        raw: PEM-encoded PKCS#1 or PKCS#8 private key
        password: Password if the key is encrypted

    Returns:
        RSAPrivateKey

    Raises:
        InvalidKeyFormatError: If the key cannot be loaded
    """
    text = normalize_key_text(raw)
    if not text:
        raise InvalidKeyFormatError("private key data is empty")
    if not text.startswith(PEM_PREFIX):
        raise InvalidKeyFormatError("private key does not appear to be in PEM format")

    block_type = _pem_block_type(text)
    if block_type not in PEM_PRIVATE_TYPES:
        raise InvalidKeyFormatError(f"unsupported private key format: {block_type}")

    try:
        pwd = password.encode() if password else None
        key = serialization.load_pem_private_key(text.encode() + b"\n", password=pwd)
    except TypeError:
        raise InvalidKeyFormatError("private key is passphrase-protected")
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidKeyFormatError(f"failed to load private key: {e}")

    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidKeyFormatError("private key is not an RSA key")
    return key


def serialize_public_key(public_key: rsa.RSAPublicKey) -> bytes:
    """
    Serialize a public key to canonical PEM SubjectPublicKeyInfo.

    The output does not depend on the format the key was read from.
    """
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def serialize_private_key(
    private_key: rsa.RSAPrivateKey,
    password: Optional[str] = None,
) -> bytes:
    """
    Serialize a private key to PEM.

    Unencrypted keys are written as PKCS#1 ('RSA PRIVATE KEY');
    password-protected keys as encrypted PKCS#8.
    """
    if password:
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
        )

    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def serialize_ssh_public_key(public_key: rsa.RSAPublicKey) -> bytes:
    """Serialize a public key as a single 'ssh-rsa <base64>' line."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )


def public_numbers(public_key: rsa.RSAPublicKey) -> Tuple[int, int]:
    """Return the (modulus, exponent) pair identifying a public key."""
    numbers = public_key.public_numbers()
    return numbers.n, numbers.e


def generate_key_pair(key_size: int = DEFAULT_KEY_SIZE) -> KeyPair:
    """Generate a new RSA key pair."""
    private_key = rsa.generate_private_key(
        public_exponent=PUBLIC_EXPONENT,
        key_size=key_size,
    )
    return KeyPair(private_key=private_key, public_key=private_key.public_key())


def load_public_key_file(path: Path) -> rsa.RSAPublicKey:
    """
    Load a public key from a file in any supported format.

    Raises:
        KeyNotFoundError: If the file doesn't exist
        InvalidKeyFormatError: If the contents cannot be parsed
    """
    path = Path(path)
    if not path.is_file():
        raise KeyNotFoundError(f"Public key file not found: {path}")

    with open(path, "rb") as f:
        return parse_public_key(f.read())


def load_private_key_file(
    path: Path,
    password: Optional[str] = None,
) -> rsa.RSAPrivateKey:
    """
    Load a private key from a PEM file.

    Raises:
        KeyNotFoundError: If the file doesn't exist
        InvalidKeyFormatError: If the contents cannot be parsed
    """
    path = Path(path)
    if not path.is_file():
        raise KeyNotFoundError(f"Private key not found: {path}")

    with open(path, "rb") as f:
        return parse_private_key(f.read(), password)
