#!/usr/bin/env python3
"""
mind-disk command line
Share a filesystem's disk quota between batch jobs through a locked ledger.

Typical batch script:

    export MD_PATH=~/mdquota
    md_runner.py run --quota 100G --interval 60 --on-failure "./resubmit.sh" -- ./simulate input.dat

The shell-function style of the older scripts maps onto subcommands that
pass the reserved amount along explicitly:

    md_runner.py start --quota 100G --on-failure "./resubmit.sh"
    trap "md_runner.py kill --quota 100G" TERM INT USR1
    md_runner.py exec --quota 100G --interval 2 -- ./simulate input.dat
    md_runner.py end --quota 100G
"""

import argparse
import atexit
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Union

from dotenv import load_dotenv

from md_session import JobSession
from md_utils import (
    ConfigurationError,
    LedgerStore,
    MindDiskError,
    Settings,
    format_gb,
    get_logger,
    setup_logging,
)

TRAPPED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP, signal.SIGUSR1, signal.SIGUSR2)


logger = get_logger(__name__)


def failure_callback(command: Optional[str]) -> Optional[Callable[[], None]]:
    """Wrap ``--on-failure`` into a callable that runs it through the shell."""

    if not command:
        return None

    def _run() -> None:
        logger.info("Running failure command: %s", command)
        subprocess.run(command, shell=True)

    return _run


def install_handlers(session: JobSession) -> None:
    """Release and kill on any exit path, signals included."""

    def _handler(signum, frame):
        logger.warning("Received signal %d, releasing quota", signum)
        session.kill()
        raise SystemExit(128 + signum)

    for sig in TRAPPED_SIGNALS:
        signal.signal(sig, _handler)
    atexit.register(session.end)


def command_list(args: argparse.Namespace) -> List[Union[str, List[str]]]:
    """``-c`` strings first, then the argv given after ``--``."""

    commands: List[Union[str, List[str]]] = list(args.command or [])
    if args.argv:
        commands.append(list(args.argv))
    return commands


def run_commands(session: JobSession, commands: List[Union[str, List[str]]], interval: float, shell: bool) -> int:
    returncode = 0
    for command in commands or [None]:
        result = session.execute(command, interval, shell=shell)
        if not result.ok:
            logger.error("Command stopped: %s after %d checks (usage %sG)", result.outcome.value, result.iterations, format_gb(result.usage))
            session.kill()
            return 1
        returncode = result.returncode or 0
    return returncode


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    session = JobSession(settings, workdir=args.workdir)
    install_handlers(session)
    try:
        session.start(args.quota, failure_callback(args.on_failure))
        returncode = run_commands(session, command_list(args), args.interval, args.shell)
    except MindDiskError as exc:
        # kill() may take down this process group, so report first
        logger.error("%s", exc)
        session.kill()
        return 1
    session.end()
    return returncode


def cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    session = JobSession(settings, workdir=args.workdir)
    try:
        reservation = session.start(args.quota, failure_callback(args.on_failure))
    except MindDiskError:
        session.end()
        raise
    print(format_gb(reservation.this_quota))
    return 0


def cmd_exec(args: argparse.Namespace, settings: Settings) -> int:
    session = JobSession(settings, workdir=args.workdir)
    session.resume(args.quota)
    return run_commands(session, command_list(args), args.interval, args.shell)


def cmd_end(args: argparse.Namespace, settings: Settings) -> int:
    session = JobSession(settings, workdir=args.workdir)
    session.resume(args.quota)
    session.end()
    return 0


def cmd_kill(args: argparse.Namespace, settings: Settings) -> int:
    session = JobSession(settings, workdir=args.workdir)
    session.resume(args.quota)
    session.kill()
    return 1


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    store = LedgerStore(settings.require_md_path())
    rows = store.entries()
    if not rows:
        print(f"Ledger {store.path} is empty")
        return 0

    print(f"Ledger: {store.path}")
    print("-" * 60)
    print(f"{'Disk':<20} {'Capacity':>12} {'Reserved':>12} {'Free':>12}")
    print("-" * 60)
    for index, line, entry in rows:
        if entry is None:
            print(f"{'(line ' + str(index) + ')':<20} malformed: {line!r}")
            continue
        free = entry.capacity - entry.reserved
        print(f"{entry.disk_id:<20} {format_gb(entry.capacity) + 'G':>12} {format_gb(entry.reserved) + 'G':>12} {format_gb(free) + 'G':>12}")
    print("-" * 60)
    return 0


def cmd_prune(args: argparse.Namespace, settings: Settings) -> int:
    store = LedgerStore(settings.require_md_path())
    with store.exclusive(settings.lock_timeout) as ledger:
        removed = ledger.prune()
    logger.info("Removed %d duplicate lines from %s", removed, store.path)
    return 0


def _add_quota(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--quota",
        default=os.getenv("MD_QUOTA"),
        help="Quota for this job, e.g. 100G, units K, M, G, T or P (env: MD_QUOTA)",
    )


def _add_command(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--interval", type=float, default=None, help="Seconds between disk checks (env: MD_POLL_INTERVAL)")
    parser.add_argument("-c", "--command", action="append", help="Command string to run; repeat to run several in order")
    parser.add_argument("--shell", action="store_true", help="Run commands through /bin/sh")
    parser.add_argument("argv", nargs=argparse.REMAINDER, help="Command to run after --")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reserve and enforce a shared disk quota for a batch job.")
    parser.add_argument("--md-path", default=None, help="Directory holding mdquota.txt (env: MD_PATH)")
    parser.add_argument("--lock-timeout", type=float, default=None, help="Seconds to wait for the ledger lock (env: MD_LOCK_TIMEOUT)")
    parser.add_argument("--account", default=None, help="Scheduler account for the job list (env: MD_ACCOUNT)")
    parser.add_argument("--workdir", default=".", help="Directory whose usage is measured")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level (env: LOG_LEVEL)")
    sub = parser.add_subparsers(dest="action", required=True)

    p = sub.add_parser("run", help="Reserve, run commands under the monitor, release")
    _add_quota(p)
    p.add_argument("--on-failure", default=None, help="Shell command to run when the quota cannot be reserved")
    _add_command(p)
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("start", help="Reserve quota and exit")
    _add_quota(p)
    p.add_argument("--on-failure", default=None, help="Shell command to run when the quota cannot be reserved")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("exec", help="Run commands under the monitor for an existing reservation")
    _add_quota(p)
    _add_command(p)
    p.set_defaults(func=cmd_exec)

    p = sub.add_parser("end", help="Release a reservation, reconcile and prune")
    _add_quota(p)
    p.set_defaults(func=cmd_end)

    p = sub.add_parser("kill", help="Release a reservation and terminate the process group")
    _add_quota(p)
    p.set_defaults(func=cmd_kill)

    p = sub.add_parser("status", help="Show the ledger")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("prune", help="Remove duplicate identity lines from the ledger")
    p.set_defaults(func=cmd_prune)

    args = parser.parse_args(argv)
    if getattr(args, "argv", None) and args.argv[0] == "--":
        args.argv = args.argv[1:]
    return args


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.md_path:
        settings.md_path = Path(args.md_path).expanduser()
    if args.lock_timeout is not None:
        settings.lock_timeout = args.lock_timeout
    if args.account:
        settings.account = args.account
    if getattr(args, "interval", None) is None and hasattr(args, "interval"):
        args.interval = settings.poll_interval
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(args.log_level.upper())

    try:
        settings = load_settings(args)
        settings.require_md_path()
    except ConfigurationError as exc:
        raise SystemExit(f"ERROR: {exc}") from exc

    try:
        return args.func(args, settings)
    except MindDiskError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
