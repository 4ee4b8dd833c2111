"""
Identity resolution for Kanuka

Maps the human-facing identifiers of project members (email addresses,
or the reserved CI identity) to the opaque UUIDs that key their public
key records and grants.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional


class ValidationError(Exception):
    """Raised when input validation fails."""
    pass


class InvalidEmailError(ValidationError):
    """Raised when an identifier is not a well-formed email address."""

    def __init__(self, email: str):
        self.email = email
        self.hint = "Please provide a valid email address"
        super().__init__(f"Invalid email format: {email}")


class InvalidFileTypeError(ValidationError):
    """Raised when a public key file is not named <uuid>.pub."""
    pass


class UserNotFoundError(ValidationError):
    """Raised when an identifier has no entry in the identity table."""
    pass


# GitHub Actions bot identity used by CI registrations
CI_USER_EMAIL = "41898282+github-actions[bot]@users.noreply.github.com"

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$')
UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$'
)
PUBLIC_KEY_SUFFIX = ".pub"


def is_reserved_identifier(identifier: str) -> bool:
    """Check if an identifier is reserved for automated contexts."""
    return identifier == CI_USER_EMAIL


def is_valid_email(email: Optional[str]) -> bool:
    """Check if a string is a valid email address."""
    if not email:
        return False
    return bool(EMAIL_PATTERN.match(email))


def is_valid_uuid(value: Optional[str]) -> bool:
    """Check if a string is a lowercase canonical UUID."""
    if not value:
        return False
    return bool(UUID_PATTERN.match(value))


def validate_email(email: Optional[str]) -> str:
    """
    Validate an identifier expected to be an email address.

    The reserved CI identifier is accepted as-is.

    Returns:
        The validated identifier (stripped)

    Raises:
        InvalidEmailError: If the identifier is malformed
    """
    value = (email or "").strip()
    if is_reserved_identifier(value):
        return value
    if not is_valid_email(value):
        raise InvalidEmailError(value)
    return value


@dataclass
class ResolvedTarget:
    """An identity selected to receive a grant"""
    uuid: str
    display_name: str
    is_new_identity: bool = False  # True when the identity table needs an entry


class IdentityResolver:
    """
    Resolves identifiers against a project's identity table.

    The table is passed in explicitly; the resolver never reads or
    caches configuration on its own.
    """

    def __init__(self, table: Dict[str, str]):
        self.table = dict(table)

    def uuid_for(self, identifier: str) -> Optional[str]:
        """Return the UUID registered for an identifier, if any."""
        for user_uuid, value in self.table.items():
            if value == identifier:
                return user_uuid
        return None

    def identifier_for(self, user_uuid: str) -> Optional[str]:
        """Return the identifier registered for a UUID, if any."""
        return self.table.get(user_uuid) or None

    def resolve(self, identifier: str) -> ResolvedTarget:
        """
        Resolve an identifier to its UUID.

        Args:
            identifier: Email address or the reserved CI identifier

        Returns:
            ResolvedTarget for the identity

        Raises:
            InvalidEmailError: If the identifier is not a valid email
            UserNotFoundError: If the identifier is not in the table
        """
        identifier = validate_email(identifier)

        user_uuid = self.uuid_for(identifier)
        if user_uuid is None:
            raise UserNotFoundError(f"User {identifier} not found in project")

        return ResolvedTarget(uuid=user_uuid, display_name=identifier)

    def resolve_key_file(
        self,
        path: Path,
        identifier: Optional[str] = None,
    ) -> ResolvedTarget:
        """
        Resolve the owner of a '<uuid>.pub' public key file.

        The display name comes from the identity table. When the UUID is
        not in the table, the supplied identifier is used and the result
        is flagged as a new identity.

        Raises:
            InvalidFileTypeError: If the file name is not '<uuid>.pub'
            InvalidEmailError: If a supplied identifier is malformed
            UserNotFoundError: If the UUID is unknown and no identifier given
        """
        path = Path(path)
        if not path.name.endswith(PUBLIC_KEY_SUFFIX):
            raise InvalidFileTypeError("file must have .pub extension")

        user_uuid = path.name[:-len(PUBLIC_KEY_SUFFIX)]
        if not is_valid_uuid(user_uuid):
            raise InvalidFileTypeError("public key file must be named <uuid>.pub")

        if identifier:
            identifier = validate_email(identifier)

        known = self.identifier_for(user_uuid)
        if known:
            return ResolvedTarget(uuid=user_uuid, display_name=known)

        if not identifier:
            raise UserNotFoundError(
                f"UUID {user_uuid} not found in project, provide --user flag"
            )
        return ResolvedTarget(uuid=user_uuid, display_name=identifier, is_new_identity=True)
