"""
Secrets CLI commands for Kanuka.

Commands: secrets register
"""

import json
import sys
from pathlib import Path

from ..register import (
    FailureKind,
    GrantEngine,
    RegisterOptions,
    RegisterResult,
)
from .utils import (
    DRY_RUN,
    FAILURE,
    SUCCESS,
    WARNING,
    get_storage,
    load_user_settings_or_exit,
    prompt_confirm,
    setup_logging,
    stdin_is_interactive,
)


def _relative(path: Path) -> str:
    try:
        return str(Path(path).relative_to(Path.cwd()))
    except ValueError:
        return str(path)


def render_result(result: RegisterResult) -> None:
    """Print a registration result for humans."""
    name = result.display_name

    if not result.ok:
        marker = WARNING if result.failure == FailureKind.CANCELLED else FAILURE
        print(f"{marker} {result.message}")
        if result.hint:
            print(f"  → {result.hint}")
        return

    if result.dry_run:
        if result.already_had_access:
            print(f"{DRY_RUN} Would update access for {name}")
        else:
            print(f"{DRY_RUN} Would register {name}")
        if result.files_created:
            print("\nFiles that would be created:")
            for f in result.files_created:
                print(f"  - {_relative(f.path)}")
        if result.files_updated:
            print("\nFiles that would be updated:")
            for f in result.files_updated:
                print(f"  - {_relative(f.path)}")
        print("\nPrerequisites verified:")
        for item in result.prerequisites:
            print(f"  {SUCCESS} {item}")
        print(f"\n{DRY_RUN} No changes made. Run without --dry-run to execute.")
        return

    if result.outcome == "updated":
        print(f"{SUCCESS} {name}'s access has been updated successfully!")
    else:
        print(f"{SUCCESS} {name} has been granted access successfully!")

    if result.files_created:
        print("\nFiles created:")
        for f in result.files_created:
            print(f"  {f.kind.replace('_', ' ').capitalize()}: {_relative(f.path)}")
    if result.files_updated:
        print("\nFiles updated:")
        for f in result.files_updated:
            print(f"  {f.kind.replace('_', ' ').capitalize()}: {_relative(f.path)}")

    print("\nThey now have access to decrypt the repository's secrets.")


def exit_code_for(result: RegisterResult) -> int:
    """Engine outcomes exit 0; only misuse of the command line exits 1."""
    return 1 if result.failure == FailureKind.INVALID_ARGUMENTS else 0


def cmd_register(args) -> int:
    """Grant a user access to the project's secrets"""
    setup_logging(args)

    private_key_data = None
    if args.private_key_stdin:
        private_key_data = sys.stdin.buffer.read()

    interactive = (
        not args.non_interactive
        and not args.private_key_stdin
        and not args.json
        and stdin_is_interactive()
    )

    options = RegisterOptions(
        user_email=args.user,
        public_key_text=args.pubkey,
        file_path=Path(args.file) if args.file else None,
        dry_run=args.dry_run,
        force=args.force,
        interactive=interactive,
        private_key_data=private_key_data,
    )

    storage = get_storage()
    user_settings = load_user_settings_or_exit()
    engine = GrantEngine(storage, user_settings, confirm=prompt_confirm)
    result = engine.register(options)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        render_result(result)

    return exit_code_for(result)


def register_secrets_commands(subparsers):
    """Register secrets commands with the argument parser."""
    secrets_parser = subparsers.add_parser("secrets", help="Manage access to project secrets")
    secrets_sub = secrets_parser.add_subparsers(dest="secrets_command", help="Secrets commands")

    register_parser = secrets_sub.add_parser(
        "register",
        help="Grant a user access to the project's secrets",
        description=(
            "Encrypts the project key with a user's public key so they can "
            "decrypt the repository's secrets."
        ),
    )
    register_parser.add_argument("-u", "--user", help="Email of the user to register")
    register_parser.add_argument("-f", "--file", help="Path to a <uuid>.pub public key file")
    register_parser.add_argument("--pubkey", help="Public key text (PEM or OpenSSH); requires --user")
    register_parser.add_argument("--dry-run", action="store_true",
                                 help="Show what would be written without making changes")
    register_parser.add_argument("--force", action="store_true",
                                 help="Replace an existing grant without asking")
    register_parser.add_argument("--private-key-stdin", action="store_true",
                                 help="Read your private key from stdin")
    register_parser.add_argument("--non-interactive", action="store_true",
                                 help="Never prompt; keep existing grants unless --force")
    register_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    register_parser.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    register_parser.add_argument("--debug", action="store_true", help="Log debug detail")
    register_parser.set_defaults(func=cmd_register)
