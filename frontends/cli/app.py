"""
Command-line frontend for DrivePool.

Wires settings, the record store and the core components together and
exposes them as subcommands. Passphrases are always read with getpass and
only asked for when an account's access credential needs refreshing.

Usage:
    python -m frontends.cli.app accounts list
    python -m frontends.cli.app accounts connect local --label usb --directory /mnt/usb
    python -m frontends.cli.app backup ~/photos/*.jpg
    python -m frontends.cli.app restore --all -o restore.zip
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from drivepool import (
    AccountRegistry,
    ArchiveComposer,
    DrivePoolError,
    FileDescriptor,
    FileQuery,
    JsonFilePersistence,
    PlacementPlanner,
    ProviderKind,
    ProviderSet,
    RetryPolicy,
    Settings,
    TransferCoordinator,
    TransferState,
    setup_logging,
)
from drivepool.exceptions import CapacityExceededError, PassphraseTooWeakError
from drivepool.models import EventKind, TransferEvent, utcnow
from drivepool.vault import CredentialVault

if TYPE_CHECKING:
    from typing import Any

    from drivepool import Persistence
    from drivepool.transfers import BatchResult

__all__ = ["DrivePoolCLI", "build_parser", "main"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2


def _format_bytes(value: int | None) -> str:
    if value is None:
        return "unlimited"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TB"


class DrivePoolCLI:
    """
    Subcommand handlers.

    Each ``cmd_*`` method takes the parsed arguments and returns an exit
    code.

    Attributes:
        settings: Runtime settings.
        persistence: Record store owned by this process.
        registry: Account registry.
        coordinator: Transfer coordinator.
        composer: Archive composer.
    """

    def __init__(
        self,
        settings: Settings,
        persistence: Persistence | None = None,
        providers: ProviderSet | None = None,
    ) -> None:
        self.settings = settings
        self.persistence = persistence or JsonFilePersistence(settings.data_dir)
        self.registry = AccountRegistry(
            self.persistence,
            providers or ProviderSet.from_settings(settings),
            vault=CredentialVault(settings.kdf_iterations),
            retry_delay=settings.retry_base_delay,
        )
        self.coordinator = TransferCoordinator(
            self.registry,
            self.persistence,
            retry_policy=RetryPolicy(
                attempts=settings.retry_attempts, base_delay=settings.retry_base_delay
            ),
            max_workers=settings.max_workers,
        )
        self.composer = ArchiveComposer(self.registry, self.persistence)
        self._passphrase: str | None = None

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    def _ask_passphrase(self, prompt: str = "Passphrase: ") -> str:
        if self._passphrase is None:
            self._passphrase = getpass.getpass(prompt)
        return self._passphrase

    def _new_passphrase(self, prompt: str = "New passphrase") -> str:
        """Read a new passphrase twice and check its strength."""
        while True:
            passphrase = getpass.getpass(f"{prompt}: ")
            check = self.registry.policy.check(passphrase)
            if not check.is_valid:
                for error in check.errors:
                    print(f"  {error}")
                continue
            if getpass.getpass("Confirm passphrase: ") != passphrase:
                print("  Passphrases don't match. Try again.")
                continue
            return passphrase

    def _passphrase_if_needed(self, account_ids: list[str] | None = None) -> str | None:
        """Ask for the passphrase only if some access credential has expired."""
        now = utcnow()
        for account in self.registry.list_accounts():
            if account_ids is not None and account.id not in account_ids:
                continue
            token = account.cached_token
            if token is None or token.is_expired(now, self.registry.token_skew_seconds):
                return self._ask_passphrase()
        return None

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def cmd_accounts_list(self, args: argparse.Namespace) -> int:
        accounts = self.registry.list_accounts()
        if not accounts:
            print("No accounts connected.")
            return EXIT_OK
        print(f"{'ID':<40} {'PROVIDER':<13} {'EMAIL':<32} {'FREE':>12} {'TOTAL':>12}")
        for account in accounts:
            total = account.quota.bytes_total if account.quota else None
            free = _format_bytes(account.free_bytes) if account.quota else "?"
            print(
                f"{account.id:<40} {account.provider.value:<13} {account.email:<32} "
                f"{free:>12} {_format_bytes(total) if account.quota else '?':>12}"
            )
        return EXIT_OK

    def _connect_code(self, kind: ProviderKind, args: argparse.Namespace) -> str:
        if kind == ProviderKind.LOCAL:
            return args.label or input("Account label: ").strip()
        if kind == ProviderKind.AWS_S3:
            access_key = input("AWS Access Key ID: ").strip()
            secret_key = getpass.getpass("AWS Secret Access Key: ")
            return json.dumps({"access_key_id": access_key, "secret_access_key": secret_key})
        if args.code:
            return args.code
        url = self.registry.providers.get(kind).auth.authorization_url()
        print("Open this URL in a browser and grant access:\n")
        print(f"  {url}\n")
        return input("Authorization code: ").strip()

    def cmd_accounts_connect(self, args: argparse.Namespace) -> int:
        kind = ProviderKind(args.provider)
        config: dict[str, Any] = {}
        if args.directory:
            config["directory"] = str(Path(args.directory).expanduser().absolute())
        if args.capacity is not None:
            config["capacity_bytes"] = args.capacity
        for key in ("bucket", "prefix", "region", "endpoint_url"):
            if getattr(args, key, None):
                config[key] = getattr(args, key)

        self.registry.providers.get(kind).validate_config(config)
        code = self._connect_code(kind, args)
        passphrase = self._new_passphrase("Passphrase to encrypt this account's credentials")
        account = self.registry.connect_account(kind, code, passphrase, config)
        print(f"\n[OK] Connected {account.email} ({account.id})")
        if account.quota:
            print(f"     Free: {_format_bytes(account.free_bytes)}")
        return EXIT_OK

    def cmd_accounts_remove(self, args: argparse.Namespace) -> int:
        if self.registry.remove_account(args.account_id):
            print(f"[OK] Removed {args.account_id}")
        else:
            print(f"Account {args.account_id} was not connected")
        return EXIT_OK

    def cmd_accounts_refresh(self, args: argparse.Namespace) -> int:
        ids = [args.account_id] if args.account_id else [a.id for a in self.registry.list_accounts()]
        passphrase = self._passphrase_if_needed(ids)
        status = EXIT_OK
        for account_id in ids:
            try:
                quota = self.registry.refresh_quota(account_id, passphrase)
                print(
                    f"  {account_id}: {_format_bytes(quota.free_bytes)} free "
                    f"of {_format_bytes(quota.bytes_total)}"
                )
            except DrivePoolError as e:
                print(f"  {account_id}: [ERROR] {e}")
                status = EXIT_PARTIAL
        return status

    def cmd_accounts_passphrase(self, args: argparse.Namespace) -> int:
        old = getpass.getpass("Current passphrase: ")
        new = self._new_passphrase()
        self.registry.change_passphrase(args.account_id, old, new)
        print(f"[OK] Passphrase changed for {args.account_id}")
        return EXIT_OK

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def cmd_sync(self, args: argparse.Namespace) -> int:
        ids = [args.account_id] if args.account_id else [a.id for a in self.registry.list_accounts()]
        passphrase = self._passphrase_if_needed(ids)
        status = EXIT_OK
        for account_id in ids:
            try:
                count = self.registry.sync_file_index(account_id, passphrase, args.query)
                print(f"  {account_id}: {count} file(s)")
            except DrivePoolError as e:
                print(f"  {account_id}: [ERROR] {e}")
                status = EXIT_PARTIAL
        return status

    def cmd_files(self, args: argparse.Namespace) -> int:
        records = self.persistence.query_file_records(
            FileQuery(account_id=args.account_id, name_contains=args.query)
        )
        if not records:
            print("No files indexed. Run 'sync' first.")
            return EXIT_OK
        for record in records:
            print(f"{record.record_id:<60} {_format_bytes(record.size_bytes):>10}  {record.name}")
        return EXIT_OK

    @staticmethod
    def _describe(paths: list[str]) -> list[FileDescriptor]:
        descriptors = []
        for path in paths:
            p = Path(path).expanduser()
            if not p.is_file():
                raise FileNotFoundError(f"Not a file: {path}")
            descriptors.append(FileDescriptor.from_path(p))
        return descriptors

    def cmd_plan(self, args: argparse.Namespace) -> int:
        files = self._describe(args.files)
        passphrase = self._passphrase_if_needed() if args.refresh else None
        free = self.registry.free_capacity(passphrase, refresh=args.refresh)
        plan = PlacementPlanner().plan(files, free)
        for assignment in plan.assignments:
            print(
                f"  {assignment.file.name} ({_format_bytes(assignment.file.size_bytes)})"
                f" -> {assignment.account_id}"
            )
        for f in plan.unplaced:
            print(f"  {f.name} ({_format_bytes(f.size_bytes)}) -> [NO SPACE]")
        return EXIT_OK if plan.is_complete else EXIT_PARTIAL

    def _print_event(self, event: TransferEvent) -> None:
        if event.kind == EventKind.PROGRESS:
            print(f"  {event.job_id[:8]} {event.percentage:6.2f}%", end="\r", flush=True)
        elif event.state in (TransferState.COMPLETED, TransferState.FAILED, TransferState.PAUSED):
            suffix = f": {event.error}" if event.error else ""
            print(f"  {event.job_id[:8]} {event.state.value} on {event.account_id}{suffix}")

    def _report(self, result: BatchResult) -> int:
        print(f"\n[OK] {len(result.completed)}/{len(result.jobs)} file(s) uploaded")
        for job in result.failed:
            print(f"  [FAILED] {job.file.name}: {job.error}")
        for job in result.paused:
            print(f"  [PAUSED] {job.file.name} (job {job.id})")
        for f in result.unplaced:
            print(f"  [NO SPACE] {f.name}")
        return EXIT_OK if result.is_complete else EXIT_PARTIAL

    def cmd_backup(self, args: argparse.Namespace) -> int:
        files = self._describe(args.files)
        passphrase = self._passphrase_if_needed()
        unsubscribe = self.coordinator.channel.subscribe(self._print_event)
        try:
            result = self.coordinator.backup(files, passphrase, allow_partial=args.allow_partial)
        except CapacityExceededError as e:
            print(f"[ERROR] {e}")
            print("  Use --allow-partial to upload the files that fit.")
            return EXIT_ERROR
        finally:
            unsubscribe()
        return self._report(result)

    def cmd_upload(self, args: argparse.Namespace) -> int:
        files = self._describe(args.files)
        passphrase = self._passphrase_if_needed([args.account_id])
        unsubscribe = self.coordinator.channel.subscribe(self._print_event)
        try:
            result = self.coordinator.upload_to_account(files, args.account_id, passphrase)
        finally:
            unsubscribe()
        return self._report(result)

    def cmd_restore(self, args: argparse.Namespace) -> int:
        if args.record_ids:
            record_ids = list(args.record_ids)
        else:
            records = self.persistence.query_file_records(
                FileQuery(account_id=args.account_id, name_contains=args.query)
            )
            record_ids = [r.record_id for r in records]
        if not record_ids:
            print("Nothing to restore.")
            return EXIT_ERROR

        passphrase = self._passphrase_if_needed()
        archive = self.composer.compose(record_ids, passphrase)
        output = Path(args.output or archive.filename).expanduser()
        with output.open("wb") as f:
            written = archive.write_to(f)

        report = archive.report
        print(f"[OK] Wrote {output} ({_format_bytes(written)})")
        print(f"     {len(report.entries)} file(s), {len(report.failures)} error marker(s)")
        for record_id, error in report.failures.items():
            print(f"  [ERROR] {record_id}: {error}")
        return EXIT_OK if report.ok else EXIT_PARTIAL

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def cmd_jobs_list(self, args: argparse.Namespace) -> int:
        state = TransferState(args.state) if args.state else None
        jobs = self.coordinator.jobs(state)
        if not jobs:
            print("No transfer jobs.")
            return EXIT_OK
        for job in jobs:
            progress = f"{job.bytes_transferred}/{job.file.size_bytes}"
            error = f"  {job.error}" if job.error else ""
            print(f"{job.id}  {job.state.value:<10} {progress:>24}  {job.file.name} -> {job.account_id}{error}")
        return EXIT_OK

    def cmd_jobs_pause(self, args: argparse.Namespace) -> int:
        job = self.coordinator.cancel(args.job_id)
        print(f"[OK] Job {job.id} is {job.state.value}")
        return EXIT_OK

    def _run_job_command(self, job_id: str, resume: bool) -> int:
        job = self.persistence.get_transfer_job(job_id)
        passphrase = self._passphrase_if_needed([job.account_id] if job else None)
        unsubscribe = self.coordinator.channel.subscribe(self._print_event)
        try:
            if resume:
                job = self.coordinator.resume(job_id, passphrase)
            else:
                job = self.coordinator.retry(job_id, passphrase)
        finally:
            unsubscribe()
        print(f"Job {job.id}: {job.state.value}")
        return EXIT_OK if job.state == TransferState.COMPLETED else EXIT_PARTIAL

    def cmd_jobs_resume(self, args: argparse.Namespace) -> int:
        return self._run_job_command(args.job_id, resume=True)

    def cmd_jobs_retry(self, args: argparse.Namespace) -> int:
        return self._run_job_command(args.job_id, resume=False)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with every subcommand."""
    parser = argparse.ArgumentParser(
        prog="drivepool",
        description="DrivePool - one backup target made of many storage accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s accounts connect local --label usb --directory /mnt/usb --capacity 64000000000
  %(prog)s accounts connect google_drive
  %(prog)s accounts connect aws_s3 --bucket my-backups --capacity 50000000000
  %(prog)s backup ~/archive/*.tar
  %(prog)s sync && %(prog)s restore --query 2024 -o restore.zip

Settings come from the environment (or a .env file): DRIVEPOOL_DATA_DIR,
GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, DRIVEPOOL_LOG_LEVEL, ...
        """,
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    commands = parser.add_subparsers(dest="command", required=True)

    accounts = commands.add_parser("accounts", help="Manage connected accounts")
    account_commands = accounts.add_subparsers(dest="accounts_command", required=True)

    p = account_commands.add_parser("list", help="List accounts and free space")
    p.set_defaults(handler=DrivePoolCLI.cmd_accounts_list)

    p = account_commands.add_parser("connect", help="Connect a storage account")
    p.add_argument("provider", choices=[k.value for k in ProviderKind])
    p.add_argument("--code", help="OAuth authorization code (Google Drive)")
    p.add_argument("--label", help="Account label (local)")
    p.add_argument("--directory", help="Storage directory (local)")
    p.add_argument("--capacity", type=int, help="Capacity in bytes (local, S3)")
    p.add_argument("--bucket", help="Bucket name (S3)")
    p.add_argument("--prefix", help="Key prefix (S3)")
    p.add_argument("--region", help="Region (S3)")
    p.add_argument("--endpoint-url", dest="endpoint_url", help="Custom endpoint (S3)")
    p.set_defaults(handler=DrivePoolCLI.cmd_accounts_connect)

    p = account_commands.add_parser("remove", help="Remove an account")
    p.add_argument("account_id")
    p.set_defaults(handler=DrivePoolCLI.cmd_accounts_remove)

    p = account_commands.add_parser("refresh", help="Refresh quota snapshots")
    p.add_argument("account_id", nargs="?")
    p.set_defaults(handler=DrivePoolCLI.cmd_accounts_refresh)

    p = account_commands.add_parser("passphrase", help="Change an account's passphrase")
    p.add_argument("account_id")
    p.set_defaults(handler=DrivePoolCLI.cmd_accounts_passphrase)

    p = commands.add_parser("sync", help="Index remote files")
    p.add_argument("account_id", nargs="?")
    p.add_argument("--query", help="Only files whose name contains this")
    p.set_defaults(handler=DrivePoolCLI.cmd_sync)

    p = commands.add_parser("files", help="List indexed files")
    p.add_argument("--account", dest="account_id")
    p.add_argument("--query")
    p.set_defaults(handler=DrivePoolCLI.cmd_files)

    p = commands.add_parser("plan", help="Show where files would be placed")
    p.add_argument("files", nargs="+")
    p.add_argument("--refresh", action="store_true", help="Read live quotas first")
    p.set_defaults(handler=DrivePoolCLI.cmd_plan)

    p = commands.add_parser("backup", help="Spread files over all accounts")
    p.add_argument("files", nargs="+")
    p.add_argument("--allow-partial", action="store_true", help="Upload what fits")
    p.set_defaults(handler=DrivePoolCLI.cmd_backup)

    p = commands.add_parser("upload", help="Upload files to one account")
    p.add_argument("account_id")
    p.add_argument("files", nargs="+")
    p.set_defaults(handler=DrivePoolCLI.cmd_upload)

    p = commands.add_parser("restore", help="Download files as one ZIP archive")
    p.add_argument("record_ids", nargs="*")
    p.add_argument("--all", action="store_true", help="Every indexed file")
    p.add_argument("--account", dest="account_id")
    p.add_argument("--query")
    p.add_argument("-o", "--output", help="Output path")
    p.set_defaults(handler=DrivePoolCLI.cmd_restore)

    jobs = commands.add_parser("jobs", help="Inspect and control transfer jobs")
    job_commands = jobs.add_subparsers(dest="jobs_command", required=True)

    p = job_commands.add_parser("list", help="List transfer jobs")
    p.add_argument("--state", choices=[s.value for s in TransferState])
    p.set_defaults(handler=DrivePoolCLI.cmd_jobs_list)

    for name, handler, help_text in (
        ("pause", DrivePoolCLI.cmd_jobs_pause, "Pause a job that is not running"),
        ("resume", DrivePoolCLI.cmd_jobs_resume, "Resume a paused job"),
        ("retry", DrivePoolCLI.cmd_jobs_retry, "Retry a failed job"),
    ):
        p = job_commands.add_parser(name, help=help_text)
        p.add_argument("job_id")
        p.set_defaults(handler=handler)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the DrivePool CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "restore" and not (args.record_ids or args.all or args.account_id or args.query):
        parser.error("restore needs record ids, --all, --account or --query")

    try:
        settings = Settings.from_env(args.env_file)
        setup_logging(settings.log_level)
        app = DrivePoolCLI(settings)
        code = args.handler(app, args)
    except KeyboardInterrupt:
        print("\n\nInterrupted.")
        sys.exit(EXIT_ERROR)
    except PassphraseTooWeakError as e:
        for error in e.errors:
            print(f"[ERROR] {error}")
        sys.exit(EXIT_ERROR)
    except (DrivePoolError, OSError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"[ERROR] {e}")
        sys.exit(EXIT_ERROR)

    sys.exit(code)


if __name__ == "__main__":
    main()
