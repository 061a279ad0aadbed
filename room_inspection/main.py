"""Command-line entry point for the room inspection pipeline."""
import argparse
import logging
import sys
from datetime import date
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv

from room_inspection.config.settings import PipelineSettings
from room_inspection.orchestration.runner import build_pipeline
from room_inspection.types import ROOM_TYPES, LedgerExistsError, LedgerNotFoundError, PersistenceError, RosterMember
from room_inspection.utils.logging_config import setup_logging

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

ROSTER_COLUMNS = ("occupant_id", "room_identifier")


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'

    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    CYAN = '\033[36m'

    BRIGHT_BLUE = '\033[94m'
    BRIGHT_CYAN = '\033[96m'
    BRIGHT_WHITE = '\033[97m'

    BOLD = '\033[1m'
    DIM = '\033[2m'


def supports_color():
    """Check if terminal supports colors."""
    if sys.platform == 'win32':
        try:
            import ctypes
            kernel32 = ctypes.windll.kernel32
            # Enable ANSI escape sequences on Windows 10+
            kernel32.SetConsoleMode(kernel32.GetStdHandle(-11), 7)
            return True
        except (AttributeError, OSError):
            return False
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


if not supports_color():
    for attr in dir(Colors):
        if not attr.startswith('_'):
            setattr(Colors, attr, '')


def print_header(text: str, char: str = "=", color: str = Colors.CYAN):
    width = 70
    print()
    print(color + Colors.BOLD + char * width + Colors.RESET)
    print(color + Colors.BOLD + text.center(width) + Colors.RESET)
    print(color + Colors.BOLD + char * width + Colors.RESET)
    print()


def print_success(text: str):
    print(Colors.GREEN + Colors.BOLD + "✓ " + Colors.RESET + Colors.GREEN + text + Colors.RESET)


def print_error(text: str):
    print(Colors.RED + Colors.BOLD + "✗ " + Colors.RESET + Colors.RED + text + Colors.RESET)


def print_warning(text: str):
    print(Colors.YELLOW + Colors.BOLD + "⚠ " + Colors.RESET + Colors.YELLOW + text + Colors.RESET)


def print_info(text: str):
    print(Colors.CYAN + "ℹ " + Colors.RESET + Colors.BRIGHT_CYAN + text + Colors.RESET)


def print_section(text: str):
    print()
    print(Colors.BRIGHT_BLUE + Colors.BOLD + "▶ " + text + Colors.RESET)
    print(Colors.DIM + "─" * 70 + Colors.RESET)


def print_field(label: str, value):
    print(f"  {Colors.BRIGHT_WHITE}{label}:{Colors.RESET} {value}")


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def load_roster(path: Path):
    """Read a roster CSV with occupant_id, room_identifier and optional occupant_name columns."""
    df = pd.read_csv(path, dtype=str, encoding="utf-8-sig")
    df.columns = [str(column).strip() for column in df.columns]
    missing = [column for column in ROSTER_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(f"Roster is missing columns: {', '.join(missing)}")
    df = df.dropna(subset=list(ROSTER_COLUMNS))

    roster = []
    for _, row in df.iterrows():
        name = row.get("occupant_name")
        roster.append(RosterMember(
            occupant_id=row["occupant_id"].strip(),
            room_identifier=row["room_identifier"].strip(),
            occupant_name=name.strip() if isinstance(name, str) and name.strip() else None,
        ))
    return roster


def cmd_check_admission(pipeline, args) -> int:
    print_section("Admission Window")
    gate = pipeline.check_admission()
    print_field("Status", gate.status.value)
    if gate.active_config is not None:
        print_field("Window", f"{gate.active_config.name} ({gate.active_config.time_range_label()})")
    if gate.allowed:
        print_success("Submissions are open")
    else:
        print_warning(gate.reason)
    return 0


def cmd_submit(pipeline, args) -> int:
    image_path = Path(args.image)
    if not image_path.is_file():
        print_error(f"File not found: {image_path}")
        return 1

    print_section(f"Submitting {image_path.name} for {args.occupant} (room {args.room})")
    try:
        verdict = pipeline.submit(
            args.occupant,
            args.room,
            image_path.read_bytes(),
            room_type=args.room_type,
            building=args.building,
        )
    except PersistenceError as e:
        print_error(str(e))
        return 1

    if not verdict.accepted:
        print_error(f"Rejected ({verdict.rejection_code.value}): {verdict.feedback_text}")
        return 2

    print_field("Score", f"{verdict.numeric_score}/10")
    print_field("Status", verdict.status.value)
    if verdict.used_fallback:
        print_warning("Automatic scoring was unavailable, a provisional score was assigned")
    print()
    print(verdict.feedback_text)
    print()
    if verdict.status.value == "PASS":
        print_success("Inspection passed")
    else:
        print_warning("Inspection failed")
    return 0


def cmd_open_ledger(pipeline, args) -> int:
    roster_path = Path(args.roster)
    if not roster_path.is_file():
        print_error(f"File not found: {roster_path}")
        return 1
    try:
        roster = load_roster(roster_path)
    except ValueError as e:
        print_error(str(e))
        return 1
    if not roster:
        print_error("Roster is empty")
        return 1

    try:
        count = pipeline.store.open_ledger(args.date, roster)
    except LedgerExistsError as e:
        print_error(str(e))
        return 1
    print_success(f"Opened ledger for {args.date.isoformat()} with {count} occupants")
    return 0


def cmd_show_ledger(pipeline, args) -> int:
    entries = pipeline.store.get_ledger(args.date)
    if not entries:
        print_error(f"No attendance ledger for {args.date.isoformat()}")
        return 1

    print_section(f"Attendance {args.date.isoformat()}")
    for entry in entries:
        if entry.is_submitted:
            marker = Colors.GREEN if entry.status.value == "PASS" else Colors.RED
            detail = f"{marker}{entry.status.value}{Colors.RESET} score={entry.score}"
        else:
            detail = f"{Colors.DIM}PENDING{Colors.RESET}"
        name = f" {entry.occupant_name}" if entry.occupant_name else ""
        print(f"  {entry.room_identifier:<8} {entry.occupant_id}{name}  {detail}")

    stats = pipeline.store.ledger_statistics(args.date)
    print()
    print_info(
        f"{stats.submitted}/{stats.total} submitted, {stats.pending} pending "
        f"({stats.submission_rate:.1f}%)"
    )

    if args.export:
        export_path = Path(args.export)
        export_format = export_path.suffix.lstrip(".").lower() or "csv"
        try:
            data = pipeline.store.export_ledger(args.date, export_format)
        except (ValueError, LedgerNotFoundError) as e:
            print_error(str(e))
            return 1
        export_path.parent.mkdir(parents=True, exist_ok=True)
        export_path.write_bytes(data)
        print_success(f"Exported ledger to {export_path}")
    return 0


COMMANDS = {
    "check-admission": cmd_check_admission,
    "submit": cmd_submit,
    "open-ledger": cmd_open_ledger,
    "show-ledger": cmd_show_ledger,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dormitory room inspection pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m room_inspection.main check-admission
  python -m room_inspection.main submit photo.jpg --occupant 20231234 --room 301
  python -m room_inspection.main open-ledger 2026-10-19 roster.csv
  python -m room_inspection.main show-ledger 2026-10-19 --export out/attendance.xlsx
        """
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: LOG_LEVEL env var or INFO)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Optional log file path'
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check-admission", help="Show whether submissions are open right now")

    submit = subparsers.add_parser("submit", help="Submit a room photo for inspection")
    submit.add_argument("image", help="Path to the room photo")
    submit.add_argument("--occupant", required=True, help="Occupant ID")
    submit.add_argument("--room", required=True, help="Room identifier")
    submit.add_argument(
        "--room-type",
        type=str.upper,
        choices=ROOM_TYPES,
        default=None,
        help="Compare against the reference template for this room type",
    )
    submit.add_argument("--building", default=None, help="Building name used to pick a reference template")

    open_ledger = subparsers.add_parser("open-ledger", help="Create a day's attendance ledger from a roster CSV")
    open_ledger.add_argument("date", type=parse_date, help="Inspection date (YYYY-MM-DD)")
    open_ledger.add_argument("roster", help="CSV with occupant_id, room_identifier[, occupant_name]")

    show_ledger = subparsers.add_parser("show-ledger", help="Print a day's attendance ledger")
    show_ledger.add_argument("date", type=parse_date, help="Inspection date (YYYY-MM-DD)")
    show_ledger.add_argument("--export", default=None, help="Write the ledger to a .csv, .json or .xlsx file")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = PipelineSettings.from_env()

    log_file = Path(args.log_file) if args.log_file else settings.log_file
    setup_logging(log_level=args.log_level or settings.log_level, log_file=log_file)

    print_header("Room Inspection")
    pipeline = build_pipeline(settings)
    try:
        return COMMANDS[args.command](pipeline, args)
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}", exc_info=True)
        print_error(f"An error occurred: {e}")
        print_info("Check the logs for more details.")
        raise
    finally:
        pipeline.scoring_client.close()


if __name__ == '__main__':
    sys.exit(main())
