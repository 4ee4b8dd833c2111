"""
Kanuka Storage Module

This module provides persistent storage for Kanuka projects.
Manages the .kanuka/ directory structure, the JSON identity table,
public key records and encrypted grants.

The storage object is an explicit handle: configuration is read from disk
on every call and never cached between calls.
"""

import json
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Any

from cryptography.hazmat.primitives.asymmetric import rsa

from .keys import load_public_key_file, serialize_public_key


KANUKA_DIR = ".kanuka"
CONFIG_FILE = "config.json"
PUBLIC_KEYS_DIR = "public_keys"
SECRETS_DIR = "secrets"
AUDIT_FILE = "audit.jsonl"
LOCK_FILE = ".lock"

PUBLIC_KEY_SUFFIX = ".pub"
GRANT_SUFFIX = ".kanuka"
PRIVATE_KEY_FILE = "privkey"

PUBLIC_KEY_MODE = 0o644
GRANT_MODE = 0o600
PRIVATE_KEY_MODE = 0o600


class StorageError(Exception):
    """Base exception for storage errors"""
    pass


class ProjectNotFoundError(StorageError):
    """Raised when no initialized .kanuka directory is found"""
    pass


class ProjectExistsError(StorageError):
    """Raised when trying to init in existing project"""
    pass


class GrantNotFoundError(StorageError):
    """Raised when an identity has no grant file"""
    pass


class ConfigError(StorageError):
    """Raised when a configuration file cannot be parsed"""
    pass


@dataclass
class ProjectConfig:
    """Configuration for a Kanuka project, including the identity table"""
    project_uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    project_name: str = ""
    users: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": {
                "project_uuid": self.project_uuid,
                "name": self.project_name,
            },
            "users": dict(self.users),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        project = data.get("project", {})
        return cls(
            project_uuid=project.get("project_uuid", ""),
            project_name=project.get("name", ""),
            users=dict(data.get("users", {})),
        )


@dataclass
class UserSettings:
    """
    Local settings for the person running Kanuka.

    Holds the actor's identity and where their private keys live:
        $XDG_CONFIG_HOME/kanuka/config.json      # user_uuid, email
        $XDG_DATA_HOME/kanuka/keys/<project>/privkey
    """
    config_dir: Path
    keys_dir: Path
    user_uuid: str = ""
    email: str = ""

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILE

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "UserSettings":
        """Build settings from XDG environment variables and load the user config."""
        env = os.environ if environ is None else environ
        home = Path(env.get("HOME") or Path.home())

        config_home = Path(env.get("XDG_CONFIG_HOME") or home / ".config")
        data_home = Path(env.get("XDG_DATA_HOME") or home / ".local" / "share")

        settings = cls(
            config_dir=config_home / "kanuka",
            keys_dir=data_home / "kanuka" / "keys",
        )
        settings.load()
        return settings

    def load(self) -> None:
        """Load user_uuid and email from the user config, if present."""
        if not self.config_path.is_file():
            return
        try:
            with open(self.config_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to load user config {self.config_path}: {e}")

        user = data.get("user", {})
        self.user_uuid = user.get("user_uuid", "")
        self.email = user.get("email", "")

    def save(self) -> None:
        """Save user_uuid and email to the user config."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = {"user": {"email": self.email, "user_uuid": self.user_uuid}}
        atomic_write(self.config_path, json.dumps(data, indent=2).encode())

    def ensure_user_uuid(self) -> str:
        """Mint and persist a UUID for this user if none exists yet."""
        if not self.user_uuid:
            self.user_uuid = str(uuid.uuid4())
            self.save()
        return self.user_uuid

    def key_dir(self, project_uuid: str) -> Path:
        return self.keys_dir / project_uuid

    def private_key_path(self, project_uuid: str) -> Path:
        """Path of the actor's private key for a project."""
        return self.key_dir(project_uuid) / PRIVATE_KEY_FILE


def atomic_write(path: Path, data: bytes, mode: int = PUBLIC_KEY_MODE) -> None:
    """
    Write a file so readers see either the old or the new contents.

    Data goes to a temporary file in the same directory, which is then
    renamed over the target. On failure the target is left untouched.

    Raises:
        OSError: If the directory is not writable or the rename fails
    """
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def find_project_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find the .kanuka directory by searching up from start_path.

    Returns the path containing .kanuka, or None if not found.
    """
    current = Path(start_path or os.getcwd()).resolve()

    while current != current.parent:
        if (current / KANUKA_DIR).is_dir():
            return current
        current = current.parent

    # Check root
    if (current / KANUKA_DIR).is_dir():
        return current

    return None


class KanukaStorage:
    """
    Manages persistent access state for a Kanuka project.

    Directory structure:
        .kanuka/
        ├── config.json          # Project UUID and identity table
        ├── audit.jsonl          # Append-only operation log
        ├── public_keys/
        │   └── <uuid>.pub       # PEM public key per member
        └── secrets/
            └── <uuid>.kanuka    # Project key sealed per member
    """

    def __init__(self, project_path: Optional[Path] = None):
        """
        Initialize storage for a project.

        Args:
            project_path: Path to project root. If None, searches up from cwd.
        """
        if project_path:
            self.project_root = Path(project_path).resolve()
        else:
            found = find_project_root()
            if found:
                self.project_root = found
            else:
                self.project_root = Path.cwd().resolve()

        self.kanuka_dir = self.project_root / KANUKA_DIR
        self.config_path = self.kanuka_dir / CONFIG_FILE
        self.public_keys_dir = self.kanuka_dir / PUBLIC_KEYS_DIR
        self.secrets_dir = self.kanuka_dir / SECRETS_DIR
        self.audit_path = self.kanuka_dir / AUDIT_FILE
        self.lock_path = self.kanuka_dir / LOCK_FILE

    def is_initialized(self) -> bool:
        """Check if project is initialized"""
        return (
            self.kanuka_dir.is_dir()
            and self.config_path.is_file()
            and self.public_keys_dir.is_dir()
            and self.secrets_dir.is_dir()
        )

    def init_project(
        self,
        project_name: str,
        project_uuid: Optional[str] = None,
        force: bool = False,
    ) -> ProjectConfig:
        """
        Create the .kanuka directory layout and an empty identity table.

        Args:
            project_name: Name for the project
            project_uuid: UUID to use. If None, one is minted.
            force: If True, reinitialize existing project

        Returns:
            ProjectConfig for the new project

        Raises:
            ProjectExistsError: If project exists and force=False
        """
        if self.is_initialized() and not force:
            raise ProjectExistsError(
                f"Kanuka already initialized in {self.project_root}"
            )

        self.kanuka_dir.mkdir(exist_ok=True)
        self.public_keys_dir.mkdir(exist_ok=True)
        self.secrets_dir.mkdir(exist_ok=True)

        config = ProjectConfig(project_name=project_name)
        if project_uuid:
            config.project_uuid = project_uuid
        self.save_config(config)

        return config

    def load_config(self) -> ProjectConfig:
        """
        Load project configuration.

        Raises:
            ProjectNotFoundError: If project not initialized
            ConfigError: If config.json is not valid JSON
        """
        if not self.is_initialized():
            raise ProjectNotFoundError(
                "Kanuka has not been initialized. Run 'kanuka secrets init' first."
            )

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to load project configuration: {e}")

        return ProjectConfig.from_dict(data)

    def save_config(self, config: ProjectConfig) -> None:
        """Save project configuration"""
        data = json.dumps(config.to_dict(), indent=2).encode()
        atomic_write(self.config_path, data)

    def load_identity_table(self) -> Dict[str, str]:
        """Return the UUID -> identifier mapping."""
        return self.load_config().users

    def save_identity_table(self, table: Dict[str, str]) -> None:
        """Replace the UUID -> identifier mapping."""
        config = self.load_config()
        config.users = dict(table)
        self.save_config(config)

    # =========================================================================
    # Public key records and grants
    # =========================================================================

    def public_key_path(self, user_uuid: str) -> Path:
        return self.public_keys_dir / f"{user_uuid}{PUBLIC_KEY_SUFFIX}"

    def grant_path(self, user_uuid: str) -> Path:
        return self.secrets_dir / f"{user_uuid}{GRANT_SUFFIX}"

    def has_grant(self, user_uuid: str) -> bool:
        """A grant file is the authoritative record of access."""
        return self.grant_path(user_uuid).is_file()

    def read_public_key(self, user_uuid: str) -> rsa.RSAPublicKey:
        """
        Load a member's public key record.

        Raises:
            KeyNotFoundError: If no record exists
            InvalidKeyFormatError: If the record is corrupt
        """
        return load_public_key_file(self.public_key_path(user_uuid))

    def write_public_key(self, user_uuid: str, public_key: rsa.RSAPublicKey) -> Path:
        """Write a member's public key as canonical PEM."""
        path = self.public_key_path(user_uuid)
        atomic_write(path, serialize_public_key(public_key), PUBLIC_KEY_MODE)
        return path

    def read_grant(self, user_uuid: str) -> bytes:
        """
        Read a member's sealed project key.

        Raises:
            GrantNotFoundError: If the member has no grant
        """
        path = self.grant_path(user_uuid)
        if not path.is_file():
            raise GrantNotFoundError(f"No grant found for {user_uuid}")
        with open(path, 'rb') as f:
            return f.read()

    def write_grant(self, user_uuid: str, ciphertext: bytes) -> Path:
        """Write a member's sealed project key."""
        path = self.grant_path(user_uuid)
        atomic_write(path, ciphertext, GRANT_MODE)
        return path

    def restore_file(self, path: Path, previous: Optional[bytes], mode: int = PUBLIC_KEY_MODE) -> None:
        """
        Put a file back to earlier contents, removing it if it did not exist.

        Used to undo a record write when a later write in the same
        operation fails.
        """
        path = Path(path)
        if previous is None:
            if path.exists():
                path.unlink()
            return
        atomic_write(path, previous, mode)

    def snapshot(self, path: Path) -> Optional[bytes]:
        """Return a file's current bytes, or None if it doesn't exist."""
        path = Path(path)
        if not path.is_file():
            return None
        with open(path, 'rb') as f:
            return f.read()
