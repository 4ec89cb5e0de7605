"""
TorChat-Paste - Command line administration.

Manages the local identity and encrypted contact list. Messaging itself
runs inside the transport process; this tool never opens a connection.
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Config
from .constants import CONFIG_FILENAME
from .errors import ConfigError, TorchatError
from .fingerprint import Fingerprint
from .storage import SecureStorage
from .utils import (
    format_timestamp,
    resolve_data_dir,
    setup_logging,
    truncate_string,
    validate_onion_address,
)

logger = logging.getLogger(__name__)

console = Console()


def _prompt_password(prompt: str = "Password: ", confirm: bool = False) -> str:
    password = getpass.getpass(prompt)
    if confirm and getpass.getpass("Repeat password: ") != password:
        raise ValueError("Passwords do not match")
    if not password:
        raise ValueError("Password must not be empty")
    return password


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torchat",
        description="TorChat-Paste - identity and contact administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  torchat init                              # Create a new identity
  torchat whoami                            # Show your fingerprint
  torchat contacts add <addr>.onion AbCd-EfGh-IjK= --nickname alice
  torchat contacts list
  torchat --data-dir ~/tc passwd            # Use custom data directory
        """,
    )
    parser.add_argument("--version", action="version", version=f"TorChat-Paste {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory holding identity.enc and contacts.enc",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Configuration file (default: <data-dir>/{CONFIG_FILENAME})",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    init = commands.add_parser("init", help="Create a new identity")
    init.add_argument("--force", action="store_true", help="Replace an existing identity")

    commands.add_parser("whoami", help="Show the identity fingerprint")
    commands.add_parser("unlock", help="Check the password and identity integrity")
    commands.add_parser("passwd", help="Change the storage password")
    commands.add_parser("migrate-contacts", help="Encrypt a legacy plaintext contacts.json")

    wipe = commands.add_parser("wipe", help="Securely delete identity and contacts")
    wipe.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    contacts = commands.add_parser("contacts", help="Manage contacts")
    contact_commands = contacts.add_subparsers(dest="contacts_command", metavar="ACTION")
    contact_commands.required = True
    contact_commands.add_parser("list", help="List contacts")
    add = contact_commands.add_parser("add", help="Add a contact")
    add.add_argument("address", help="Peer onion address")
    add.add_argument("fingerprint", help="Peer fingerprint, grouped or compact")
    add.add_argument("--nickname", default="", help="Display name")
    remove = contact_commands.add_parser("remove", help="Remove a contact")
    remove.add_argument("address", help="Peer onion address")

    return parser


def _load_config(args: argparse.Namespace) -> Config:
    if args.config:
        config_path = Path(args.config).expanduser()
    else:
        config_path = resolve_data_dir(args.data_dir) / CONFIG_FILENAME
    config = Config(config_path)
    if args.data_dir:
        config.set("storage", "data_dir", str(Path(args.data_dir).expanduser()))
    return config


# Commands


def cmd_init(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    if storage.has_identity() and not args.force:
        console.print("[yellow]An identity already exists.[/] Use --force to replace it.")
        return 1
    password = _prompt_password("New password: ", confirm=True)
    fingerprint = storage.create_identity(password, overwrite=args.force)
    if not config.config_path.exists():
        Config.create_example(config.config_path)
    console.print(f"Identity created. Fingerprint: [bold cyan]{fingerprint.formatted()}[/]")
    return 0


def cmd_whoami(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    fingerprint = storage.read_fingerprint()
    console.print(f"Fingerprint: [bold cyan]{fingerprint.formatted()}[/]")
    console.print(f"Data directory: {storage.data_dir}")
    return 0


def cmd_unlock(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    keypair = storage.load_identity(_prompt_password())
    try:
        fingerprint = Fingerprint.from_public_key(keypair.public_key)
    finally:
        keypair.wipe()
    console.print(f"[green]Identity unlocked.[/] Fingerprint: {fingerprint.formatted()}")
    return 0


def cmd_passwd(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    old_password = _prompt_password("Current password: ")
    new_password = _prompt_password("New password: ", confirm=True)
    storage.change_password(old_password, new_password)
    console.print("[green]Password changed.[/]")
    return 0


def cmd_migrate_contacts(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    if not storage.legacy_contacts_path.exists():
        console.print("No plaintext contacts file to migrate.")
        return 0
    result = storage.migrate_legacy_contacts(_prompt_password())
    console.print(f"[green]Migrated {result.added} contacts;[/] plaintext file removed.")
    if result.skipped:
        console.print(
            f"[yellow]{len(result.skipped)} contacts had no fingerprint and were not imported:[/]"
        )
        for entry in result.skipped:
            label = f" ({entry['nickname']})" if entry["nickname"] else ""
            console.print(f"  {entry['address']}{label}")
        console.print("Add them again with: torchat contacts add ADDRESS FINGERPRINT")
    return 0


def cmd_wipe(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    if not args.yes:
        answer = console.input("[bold red]Delete identity and contacts permanently?[/] [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            console.print("Aborted.")
            return 1
    removed = storage.wipe_all()
    console.print(f"Wiped: {', '.join(removed) if removed else 'nothing to remove'}")
    return 0


def cmd_contacts(storage: SecureStorage, config: Config, args: argparse.Namespace) -> int:
    password = _prompt_password()

    if args.contacts_command == "list":
        contacts = storage.load_contacts(password)
        table = Table(title="Contacts", show_header=True, header_style="bold cyan")
        table.add_column("Nickname", style="yellow")
        table.add_column("Address", style="white")
        table.add_column("Fingerprint", style="cyan")
        table.add_column("Added", style="dim")
        if not contacts:
            table.add_row("", "[dim]No contacts[/]", "", "")
        for contact in contacts:
            table.add_row(
                truncate_string(contact.nickname, 24),
                contact.address,
                contact.fingerprint.formatted(),
                format_timestamp(contact.added_at),
            )
        console.print(table)
        return 0

    if args.contacts_command == "add":
        if not validate_onion_address(args.address):
            console.print("[yellow]Warning:[/] address is not a v3 onion address")
        fingerprint = Fingerprint.from_formatted(args.fingerprint)
        if storage.add_contact(args.address, args.nickname, fingerprint, password):
            console.print(f"[green]Added[/] {args.address}")
        else:
            console.print(f"{args.address} is already a contact")
        return 0

    if storage.remove_contact(args.address, password):
        console.print(f"[green]Removed[/] {args.address}")
        return 0
    console.print(f"No contact with address {args.address}")
    return 1


COMMANDS = {
    "init": cmd_init,
    "whoami": cmd_whoami,
    "unlock": cmd_unlock,
    "passwd": cmd_passwd,
    "migrate-contacts": cmd_migrate_contacts,
    "wipe": cmd_wipe,
    "contacts": cmd_contacts,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the torchat command."""
    args = _build_parser().parse_args(argv)

    try:
        config = _load_config(args)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {e.message}")
        return 2

    level = "DEBUG" if args.debug else config.get("logging", "level")
    setup_logging(
        config.data_dir,
        level=level,
        console=args.debug or config.get("logging", "console_logging"),
        file_logging=config.get("logging", "file_logging"),
    )

    try:
        storage = SecureStorage(config.data_dir, kdf_profile=config.kdf_profile)
        return COMMANDS[args.command](storage, config, args)
    except TorchatError as e:
        logger.debug(f"Command {args.command} failed: {e.to_dict()}")
        console.print(f"[red]Error:[/] {e.message}")
        return 1
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
