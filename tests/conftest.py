"""
Shared fixtures for Kanuka tests
"""

import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

import pytest

from kanuka.envelope import generate_symmetric_key, seal
from kanuka.keys import generate_key_pair, serialize_private_key
from kanuka.register import GrantEngine
from kanuka.storage import KanukaStorage, UserSettings, atomic_write, PRIVATE_KEY_MODE


ACTOR_EMAIL = "alice@example.com"
BOB_EMAIL = "bob@example.com"


@pytest.fixture(scope="session")
def actor_keys():
    """Keypair of the member running registrations"""
    return generate_key_pair()


@pytest.fixture(scope="session")
def bob_keys():
    return generate_key_pair()


@pytest.fixture(scope="session")
def carol_keys():
    return generate_key_pair()


@pytest.fixture
def temp_project_dir():
    """Create a temporary directory for testing"""
    temp_dir = tempfile.mkdtemp()
    original_cwd = os.getcwd()
    os.chdir(temp_dir)
    yield Path(temp_dir).resolve()
    os.chdir(original_cwd)
    shutil.rmtree(temp_dir)


@pytest.fixture
def user_env(tmp_path, monkeypatch):
    """Point XDG config and data directories at a private location"""
    config_home = tmp_path / "config"
    data_home = tmp_path / "data"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setenv("XDG_DATA_HOME", str(data_home))
    return {"XDG_CONFIG_HOME": str(config_home), "XDG_DATA_HOME": str(data_home)}


class KanukaProject:
    """An initialized project whose actor already holds access"""

    def __init__(self, storage: KanukaStorage, settings: UserSettings, symmetric_key: bytes, actor_keys):
        self.storage = storage
        self.settings = settings
        self.symmetric_key = symmetric_key
        self.actor_keys = actor_keys

    @property
    def project_uuid(self) -> str:
        return self.storage.load_config().project_uuid

    def add_member(self, email: str, public_key=None, member_uuid: Optional[str] = None) -> str:
        """Add an identity table entry, and a public key record if a key is given."""
        member_uuid = member_uuid or str(uuid.uuid4())
        table = self.storage.load_identity_table()
        table[member_uuid] = email
        self.storage.save_identity_table(table)
        if public_key is not None:
            self.storage.write_public_key(member_uuid, public_key)
        return member_uuid

    def grant(self, member_uuid: str, public_key) -> bytes:
        """Seal the project key for a member directly, bypassing the engine."""
        ciphertext = seal(self.symmetric_key, public_key)
        self.storage.write_grant(member_uuid, ciphertext)
        return ciphertext

    def engine(self, confirm=None, **kwargs) -> GrantEngine:
        return GrantEngine(self.storage, self.settings, confirm=confirm, **kwargs)

    def grant_bytes(self, member_uuid: str) -> bytes:
        return self.storage.grant_path(member_uuid).read_bytes()


@pytest.fixture
def project(temp_project_dir, user_env, actor_keys):
    """
    An initialized project in the cwd.

    The actor (alice) has a user config, a private key in the data
    directory, a public key record and a grant.
    """
    storage = KanukaStorage(temp_project_dir)
    config = storage.init_project("test-project")

    settings = UserSettings.from_env()
    settings.email = ACTOR_EMAIL
    settings.ensure_user_uuid()

    private_key_path = settings.private_key_path(config.project_uuid)
    private_key_path.parent.mkdir(parents=True)
    atomic_write(private_key_path, serialize_private_key(actor_keys.private_key), PRIVATE_KEY_MODE)

    kanuka_project = KanukaProject(storage, settings, generate_symmetric_key(), actor_keys)
    kanuka_project.add_member(ACTOR_EMAIL, actor_keys.public_key, member_uuid=settings.user_uuid)
    kanuka_project.grant(settings.user_uuid, actor_keys.public_key)
    return kanuka_project
