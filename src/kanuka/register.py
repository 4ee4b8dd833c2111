"""
Access Grant Engine for Kanuka

Grants a project member access to the shared symmetric key by sealing that
key under the member's RSA public key. The caller must prove their own
access first: their grant is opened with their local private key, and the
recovered key is what gets re-sealed for the target.

A run moves through these steps, stopping at the first failure:

    1. validate project      - .kanuka layout exists
    2. resolve actor         - open the caller's own grant
    3. resolve target        - identity table lookup, public key parsing
    4. check existing grant  - confirm before replacing someone's access
    5. dry-run gate          - report the plan without writing
    6. encrypt and write     - public key record first, grant last
    7. report                - RegisterResult

Failures are returned as a RegisterResult with ok=False and a FailureKind;
register() does not raise for expected failures.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import rsa

from .audit import AuditEntry, AuditLog
from .envelope import (
    DEFAULT_PADDING,
    DecryptError,
    EncryptError,
    Padding,
    open_envelope,
    seal,
)
from .filelock import FileLockTimeout, project_lock
from .identity import (
    IdentityResolver,
    InvalidEmailError,
    InvalidFileTypeError,
    ResolvedTarget,
    UserNotFoundError,
    validate_email,
)
from .keys import (
    InvalidKeyFormatError,
    KeyNotFoundError,
    load_private_key_file,
    load_public_key_file,
    parse_private_key,
    parse_public_key,
)
from .logging import get_logger, log_context
from .storage import (
    ConfigError,
    GrantNotFoundError,
    KanukaStorage,
    PUBLIC_KEY_MODE,
    ProjectConfig,
    ProjectNotFoundError,
    UserSettings,
)


class RegisterMode(Enum):
    """How the target identity and its public key are supplied."""
    EMAIL = "email"              # Key already recorded in the project
    PUBKEY_TEXT = "pubkey_text"  # Inline PEM or OpenSSH key plus email
    FILE = "file"                # Path to a <uuid>.pub file


class FailureKind(Enum):
    """Why a registration did not complete."""
    INVALID_ARGUMENTS = "invalid_arguments"
    NOT_INITIALIZED = "not_initialized"
    CONFIG_ERROR = "config_error"
    NO_ACCESS = "no_access"
    PRIVATE_KEY_MISSING = "private_key_missing"
    DECRYPT_FAILED = "decrypt_failed"
    INVALID_EMAIL = "invalid_email"
    INVALID_FILE_TYPE = "invalid_file_type"
    INVALID_KEY_FORMAT = "invalid_key_format"
    TARGET_NOT_FOUND = "target_not_found"
    PUBLIC_KEY_NOT_FOUND = "public_key_not_found"
    CANCELLED = "cancelled"
    PERMISSION_DENIED = "permission_denied"
    FILESYSTEM_ERROR = "filesystem_error"


class RegistrationError(Exception):
    """A registration step failed with a known cause."""

    def __init__(self, kind: FailureKind, message: str, hint: str = ""):
        super().__init__(message)
        self.kind = kind
        self.hint = hint


class RegistrationCancelled(RegistrationError):
    """The caller declined to replace an existing grant."""

    def __init__(self, display_name: str, hint: str = ""):
        super().__init__(
            FailureKind.CANCELLED,
            "Registration cancelled.",
            hint or f"{display_name}'s existing access was left unchanged",
        )


PUBLIC_KEY_FILE = "public_key"
GRANT_FILE = "encrypted_key"

ConfirmCallback = Callable[[str], bool]


@dataclass
class RegisterOptions:
    """Inputs for one registration run"""
    user_email: Optional[str] = None
    public_key_text: Optional[str] = None
    file_path: Optional[Path] = None
    dry_run: bool = False
    force: bool = False
    interactive: bool = True
    private_key_data: Optional[bytes] = None
    private_key_password: Optional[str] = None

    @property
    def mode(self) -> RegisterMode:
        if self.public_key_text is not None:
            return RegisterMode.PUBKEY_TEXT
        if self.file_path is not None:
            return RegisterMode.FILE
        return RegisterMode.EMAIL

    def validate(self) -> None:
        """
        Check that a usable combination of target specifiers was given.

        Raises:
            RegistrationError: With FailureKind.INVALID_ARGUMENTS
        """
        if self.public_key_text is not None and self.file_path is not None:
            raise RegistrationError(
                FailureKind.INVALID_ARGUMENTS,
                "Cannot specify both --file and --pubkey.",
                "Use --file for a <uuid>.pub file, or --pubkey with --user",
            )
        if self.mode == RegisterMode.EMAIL and not self.user_email:
            raise RegistrationError(
                FailureKind.INVALID_ARGUMENTS,
                "Either --user, --file, or --pubkey must be specified.",
                "Run 'kanuka secrets register --help' to see the available options",
            )
        if self.mode == RegisterMode.PUBKEY_TEXT and not self.user_email:
            raise RegistrationError(
                FailureKind.INVALID_ARGUMENTS,
                "When using --pubkey, the --user flag is required.",
                "Specify a user email with --user",
            )


@dataclass
class RegisteredFile:
    """A file that was (or would be) created or updated"""
    kind: str  # PUBLIC_KEY_FILE or GRANT_FILE
    path: Path

    def to_dict(self):
        return {"type": self.kind, "path": str(self.path)}


@dataclass
class RegisterResult:
    """Structured outcome of a registration run"""
    ok: bool = False
    mode: RegisterMode = RegisterMode.EMAIL
    dry_run: bool = False
    failure: Optional[FailureKind] = None
    message: str = ""
    hint: str = ""
    display_name: str = ""
    target_uuid: str = ""
    already_had_access: bool = False
    public_key_path: Optional[Path] = None
    grant_path: Optional[Path] = None
    files_created: List[RegisteredFile] = field(default_factory=list)
    files_updated: List[RegisteredFile] = field(default_factory=list)
    prerequisites: List[str] = field(default_factory=list)

    @property
    def outcome(self) -> Optional[str]:
        """'granted' for a first grant, 'updated' for a replaced one."""
        if not self.ok:
            return None
        return "updated" if self.already_had_access else "granted"

    @property
    def written_paths(self) -> List[Path]:
        return [f.path for f in self.files_created + self.files_updated]

    def fail(self, kind: FailureKind, message: str, hint: str = "") -> "RegisterResult":
        self.ok = False
        self.failure = kind
        self.message = message
        self.hint = hint
        return self

    def to_dict(self):
        return {
            "ok": self.ok,
            "outcome": self.outcome,
            "mode": self.mode.value,
            "dry_run": self.dry_run,
            "failure": self.failure.value if self.failure else None,
            "message": self.message,
            "hint": self.hint,
            "display_name": self.display_name,
            "target_uuid": self.target_uuid,
            "already_had_access": self.already_had_access,
            "public_key_path": str(self.public_key_path) if self.public_key_path else None,
            "grant_path": str(self.grant_path) if self.grant_path else None,
            "files_created": [f.to_dict() for f in self.files_created],
            "files_updated": [f.to_dict() for f in self.files_updated],
            "prerequisites": list(self.prerequisites),
        }


@dataclass
class _Target:
    identity: ResolvedTarget
    public_key: rsa.RSAPublicKey
    source_path: Optional[Path] = None


class GrantEngine:
    """
    Runs registrations against one project.

    Args:
        storage: Handle on the project's .kanuka directory
        user_settings: The actor's identity and key locations
        confirm: Called with the target's display name before an existing
            grant is replaced; return True to proceed. Never called for
            dry runs, forced runs or non-interactive runs. A non-interactive
            run that is not forced leaves an existing grant alone.
        audit_log: Where to record successful registrations. Defaults to
            the project's audit.jsonl.
        padding: RSA padding used for grants
        use_lock: Hold the project lock while registering
    """

    def __init__(
        self,
        storage: KanukaStorage,
        user_settings: UserSettings,
        confirm: Optional[ConfirmCallback] = None,
        audit_log: Optional[AuditLog] = None,
        padding: Padding = DEFAULT_PADDING,
        use_lock: bool = True,
    ):
        self.storage = storage
        self.user_settings = user_settings
        self.confirm = confirm
        self.audit_log = audit_log or AuditLog(storage.audit_path)
        self.padding = padding
        self.use_lock = use_lock
        self.logger = get_logger()

    def register(self, options: RegisterOptions) -> RegisterResult:
        """
        Grant (or re-grant) a member access to the project key.

        Returns:
            RegisterResult; ok is False and failure is set when any step
            failed, in which case no grant was written.
        """
        result = RegisterResult(mode=options.mode, dry_run=options.dry_run)

        with log_context(operation="register", actor_uuid=self.user_settings.user_uuid or None):
            try:
                options.validate()
                config = self._validate_project()
                with log_context(project_uuid=config.project_uuid):
                    if options.dry_run or not self.use_lock:
                        self._run(options, config, result)
                    else:
                        with project_lock(self.storage.lock_path):
                            self._run(options, config, result)
            except RegistrationError as e:
                self.logger.info(f"Registration failed: {e}", failure=e.kind.value)
                result.fail(e.kind, str(e), e.hint)
            except FileLockTimeout as e:
                result.fail(
                    FailureKind.FILESYSTEM_ERROR,
                    str(e),
                    "Another registration may be running against this project",
                )
            except PermissionError as e:
                result.fail(FailureKind.PERMISSION_DENIED, f"Permission denied: {e}")
            except OSError as e:
                result.fail(FailureKind.FILESYSTEM_ERROR, f"Filesystem error: {e}")

        return result

    def _run(self, options: RegisterOptions, config: ProjectConfig, result: RegisterResult) -> None:
        symmetric_key = self._resolve_actor(options, config)
        result.prerequisites.append("Current user has access to decrypt symmetric key")

        target = self._resolve_target(options, config, result)
        result.display_name = target.identity.display_name
        result.target_uuid = target.identity.uuid
        result.public_key_path = self.storage.public_key_path(target.identity.uuid)
        result.grant_path = self.storage.grant_path(target.identity.uuid)

        with log_context(target_uuid=target.identity.uuid):
            self._check_existing_grant(options, target, result)

            planned = self._plan_files(options, target)
            if options.dry_run:
                self._record_files(result, planned)
                result.ok = True
                self.logger.info("Dry run complete, no changes made")
                return

            self._encrypt_and_write(symmetric_key, target, planned, result)
            result.ok = True
            self._audit(target, result)
            self.logger.info(
                f"Registered {target.identity.display_name}",
                outcome=result.outcome,
            )

    # =========================================================================
    # Steps
    # =========================================================================

    def _validate_project(self) -> ProjectConfig:
        try:
            return self.storage.load_config()
        except ProjectNotFoundError:
            raise RegistrationError(
                FailureKind.NOT_INITIALIZED,
                "Kanuka has not been initialized",
                "Run 'kanuka secrets init' instead",
            )
        except ConfigError as e:
            raise RegistrationError(
                FailureKind.CONFIG_ERROR,
                "Failed to load project configuration.",
                f"{e}. Restore .kanuka/config.json from version control.",
            )

    def _resolve_actor(self, options: RegisterOptions, config: ProjectConfig) -> bytes:
        """Prove the caller's own access and return the project key."""
        no_access = RegistrationError(
            FailureKind.NO_ACCESS,
            "You don't have access to this project",
            "Run 'kanuka secrets create' to generate your keys",
        )
        actor_uuid = self.user_settings.user_uuid
        if not actor_uuid:
            raise no_access
        try:
            ciphertext = self.storage.read_grant(actor_uuid)
        except GrantNotFoundError:
            raise no_access

        private_key = self._load_private_key(options, config)

        try:
            with self.logger.timed("open_actor_grant"):
                return open_envelope(ciphertext, private_key, self.padding)
        except DecryptError:
            raise RegistrationError(
                FailureKind.DECRYPT_FAILED,
                "Failed to decrypt your project key",
                "Your grant is corrupt or does not match your private key. "
                "Ask another member to register you again.",
            )

    def _load_private_key(
        self,
        options: RegisterOptions,
        config: ProjectConfig,
    ) -> rsa.RSAPrivateKey:
        try:
            if options.private_key_data:
                self.logger.debug("Using private key supplied on stdin")
                return parse_private_key(options.private_key_data, options.private_key_password)
            path = self.user_settings.private_key_path(config.project_uuid)
            self.logger.debug(f"Loading private key from {path}")
            return load_private_key_file(path, options.private_key_password)
        except KeyNotFoundError as e:
            raise RegistrationError(
                FailureKind.PRIVATE_KEY_MISSING,
                "Your private key for this project was not found",
                str(e),
            )
        except InvalidKeyFormatError as e:
            raise RegistrationError(
                FailureKind.PRIVATE_KEY_MISSING,
                "Your private key could not be loaded",
                str(e),
            )

    def _resolve_target(
        self,
        options: RegisterOptions,
        config: ProjectConfig,
        result: RegisterResult,
    ) -> _Target:
        resolver = IdentityResolver(config.users)
        mode = options.mode

        try:
            if mode == RegisterMode.FILE:
                return self._resolve_from_file(resolver, options, result)

            email = validate_email(options.user_email)
            if mode == RegisterMode.PUBKEY_TEXT:
                public_key = self._parse_key_text(options.public_key_text)
                identity = resolver.resolve(email)
                result.prerequisites.append("User exists in project config")
                result.prerequisites.append("Public key text parsed")
                return _Target(identity=identity, public_key=public_key)

            identity = resolver.resolve(email)
            result.prerequisites.append("User exists in project config")
            public_key = self._load_recorded_key(identity)
            result.prerequisites.append(
                f"Public key found at {self.storage.public_key_path(identity.uuid)}"
            )
            return _Target(
                identity=identity,
                public_key=public_key,
                source_path=self.storage.public_key_path(identity.uuid),
            )
        except InvalidEmailError as e:
            raise RegistrationError(FailureKind.INVALID_EMAIL, str(e), e.hint)
        except UserNotFoundError as e:
            hint = ""
            if options.user_email:
                hint = f"They must first run: kanuka secrets create --email {options.user_email}"
            raise RegistrationError(FailureKind.TARGET_NOT_FOUND, str(e), hint)
        except InvalidFileTypeError as e:
            raise RegistrationError(
                FailureKind.INVALID_FILE_TYPE,
                f"{options.file_path} is not a valid path to a public key file.",
                f"{e}, or use --user <email> --pubkey \"$(cat key.pub)\"",
            )

    def _resolve_from_file(
        self,
        resolver: IdentityResolver,
        options: RegisterOptions,
        result: RegisterResult,
    ) -> _Target:
        path = Path(options.file_path)
        identity = resolver.resolve_key_file(path, options.user_email)

        try:
            public_key = load_public_key_file(path)
        except KeyNotFoundError as e:
            raise RegistrationError(FailureKind.PUBLIC_KEY_NOT_FOUND, str(e))
        except InvalidKeyFormatError as e:
            raise RegistrationError(
                FailureKind.INVALID_KEY_FORMAT,
                "Invalid public key format provided",
                str(e),
            )

        result.prerequisites.append("Public key loaded from file")
        if identity.is_new_identity:
            result.prerequisites.append("User will be added to project config")
        else:
            result.prerequisites.append("User exists in project config")
        return _Target(identity=identity, public_key=public_key, source_path=path)

    def _parse_key_text(self, text: Optional[str]) -> rsa.RSAPublicKey:
        try:
            return parse_public_key(text or "")
        except InvalidKeyFormatError as e:
            raise RegistrationError(
                FailureKind.INVALID_KEY_FORMAT,
                "Invalid public key format provided",
                str(e),
            )

    def _load_recorded_key(self, identity: ResolvedTarget) -> rsa.RSAPublicKey:
        try:
            return self.storage.read_public_key(identity.uuid)
        except KeyNotFoundError:
            raise RegistrationError(
                FailureKind.PUBLIC_KEY_NOT_FOUND,
                f"Public key for user {identity.display_name} not found",
                f"They must first run: kanuka secrets create --email {identity.display_name}",
            )
        except InvalidKeyFormatError as e:
            raise RegistrationError(
                FailureKind.INVALID_KEY_FORMAT,
                f"Public key for user {identity.display_name} is corrupt",
                str(e),
            )

    def _check_existing_grant(
        self,
        options: RegisterOptions,
        target: _Target,
        result: RegisterResult,
    ) -> None:
        # Any existing grant takes the overwrite path, even for an unchanged key
        result.already_had_access = self.storage.has_grant(target.identity.uuid)
        if not result.already_had_access:
            return

        result.prerequisites.append("User already has access; their key will be replaced")
        if options.force or options.dry_run:
            self.logger.debug("Replacing existing grant without confirmation")
            return

        if not options.interactive:
            raise RegistrationCancelled(
                target.identity.display_name,
                f"{target.identity.display_name} already has access; "
                "use --force to replace their grant without a prompt",
            )

        approved = self.confirm(target.identity.display_name) if self.confirm else False
        if not approved:
            raise RegistrationCancelled(target.identity.display_name)

    def _plan_files(self, options: RegisterOptions, target: _Target) -> List[Tuple[str, Path]]:
        """Files this run writes, in write order."""
        user_uuid = target.identity.uuid
        pub_path = self.storage.public_key_path(user_uuid)
        planned = []

        if options.mode != RegisterMode.EMAIL and not self._is_record(target.source_path, pub_path):
            planned.append((PUBLIC_KEY_FILE, pub_path))
        planned.append((GRANT_FILE, self.storage.grant_path(user_uuid)))
        return planned

    @staticmethod
    def _is_record(source: Optional[Path], record: Path) -> bool:
        if source is None:
            return False
        return Path(source).resolve() == record.resolve()

    def _record_files(self, result: RegisterResult, planned: List[Tuple[str, Path]]) -> None:
        for kind, path in planned:
            entry = RegisteredFile(kind=kind, path=path)
            if path.exists():
                result.files_updated.append(entry)
            else:
                result.files_created.append(entry)

    def _encrypt_and_write(
        self,
        symmetric_key: bytes,
        target: _Target,
        planned: List[Tuple[str, Path]],
        result: RegisterResult,
    ) -> None:
        """
        Seal the project key and write records in a fixed order.

        The public key record (and identity table, for new identities) are
        written before the grant. If the grant write fails, every earlier
        write is rolled back.
        """
        user_uuid = target.identity.uuid

        try:
            with self.logger.timed("seal_envelope"):
                ciphertext = seal(symmetric_key, target.public_key, self.padding)
        except EncryptError as e:
            raise RegistrationError(
                FailureKind.INVALID_KEY_FORMAT,
                f"Public key for {target.identity.display_name} cannot be used",
                f"{e}. Ask them for a 2048-bit or larger RSA key.",
            )

        self._record_files(result, planned)

        undo: List[Tuple[Path, Optional[bytes], int]] = []
        try:
            for kind, path in planned:
                if kind == PUBLIC_KEY_FILE:
                    undo.append((path, self.storage.snapshot(path), PUBLIC_KEY_MODE))
                    self.storage.write_public_key(user_uuid, target.public_key)

            if target.identity.is_new_identity:
                config_path = self.storage.config_path
                undo.append((config_path, self.storage.snapshot(config_path), PUBLIC_KEY_MODE))
                table = self.storage.load_identity_table()
                table[user_uuid] = target.identity.display_name
                self.storage.save_identity_table(table)

            self.storage.write_grant(user_uuid, ciphertext)
        except OSError as e:
            self._rollback(undo)
            result.files_created.clear()
            result.files_updated.clear()
            if isinstance(e, PermissionError):
                kind = FailureKind.PERMISSION_DENIED
            else:
                kind = FailureKind.FILESYSTEM_ERROR
            raise RegistrationError(kind, f"Failed to write access files: {e}")

    def _rollback(self, undo: List[Tuple[Path, Optional[bytes], int]]) -> None:
        for path, previous, mode in reversed(undo):
            try:
                self.storage.restore_file(path, previous, mode)
            except OSError as e:
                self.logger.error(f"Could not roll back {path}: {e}")

    def _audit(self, target: _Target, result: RegisterResult) -> None:
        entry = AuditEntry(
            operation="register",
            user=self.user_settings.email,
            user_uuid=self.user_settings.user_uuid,
            target_user=target.identity.display_name,
            target_uuid=target.identity.uuid,
            files=[str(p) for p in result.written_paths],
        )
        self.audit_log.append(entry)


def register_user(
    options: RegisterOptions,
    storage: Optional[KanukaStorage] = None,
    user_settings: Optional[UserSettings] = None,
    confirm: Optional[ConfirmCallback] = None,
) -> RegisterResult:
    """
    Convenience wrapper: register against the project found from cwd.

    Settings are loaded fresh on every call.
    """
    storage = storage or KanukaStorage()
    user_settings = user_settings or UserSettings.from_env()
    engine = GrantEngine(storage, user_settings, confirm=confirm)
    return engine.register(options)
