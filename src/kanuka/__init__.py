"""
Kanuka: shared project secrets through per-member key envelopes

Each project member holds an RSA keypair. The project's 32-byte symmetric
key is sealed separately under every authorized member's public key; a
member who can open their own grant may register others.
"""

__version__ = "0.1.0"
__author__ = "Kanuka Contributors"

from .keys import (
    KeyPair,
    generate_key_pair,
    parse_public_key,
    parse_private_key,
    serialize_public_key,
    serialize_private_key,
    CryptoError,
    InvalidKeyFormatError,
    KeyNotFoundError,
)
from .envelope import (
    Padding,
    DecryptError,
    EncryptError,
    generate_symmetric_key,
    seal,
    open_envelope,
)
from .identity import (
    IdentityResolver,
    ResolvedTarget,
    ValidationError,
    InvalidEmailError,
    InvalidFileTypeError,
    UserNotFoundError,
    CI_USER_EMAIL,
)
from .storage import (
    KanukaStorage,
    ProjectConfig,
    UserSettings,
    find_project_root,
    StorageError,
    ProjectNotFoundError,
    ProjectExistsError,
    GrantNotFoundError,
    ConfigError,
)
from .register import (
    GrantEngine,
    RegisterMode,
    RegisterOptions,
    RegisterResult,
    RegisteredFile,
    FailureKind,
    RegistrationError,
    RegistrationCancelled,
    register_user,
)
from .audit import AuditEntry, AuditLog
from .logging import get_logger, configure_logging, log_context, LogFormat, LogLevel

__all__ = [
    # Keys
    "KeyPair",
    "generate_key_pair",
    "parse_public_key",
    "parse_private_key",
    "serialize_public_key",
    "serialize_private_key",
    "CryptoError",
    "InvalidKeyFormatError",
    "KeyNotFoundError",
    # Envelopes
    "Padding",
    "DecryptError",
    "EncryptError",
    "generate_symmetric_key",
    "seal",
    "open_envelope",
    # Identity
    "IdentityResolver",
    "ResolvedTarget",
    "ValidationError",
    "InvalidEmailError",
    "InvalidFileTypeError",
    "UserNotFoundError",
    "CI_USER_EMAIL",
    # Storage
    "KanukaStorage",
    "ProjectConfig",
    "UserSettings",
    "find_project_root",
    "StorageError",
    "ProjectNotFoundError",
    "ProjectExistsError",
    "GrantNotFoundError",
    "ConfigError",
    # Registration
    "GrantEngine",
    "RegisterMode",
    "RegisterOptions",
    "RegisterResult",
    "RegisteredFile",
    "FailureKind",
    "RegistrationError",
    "RegistrationCancelled",
    "register_user",
    # Audit
    "AuditEntry",
    "AuditLog",
    # Logging
    "get_logger",
    "configure_logging",
    "log_context",
    "LogFormat",
    "LogLevel",
]
