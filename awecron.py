#!/usr/bin/env python3
"""
awecron.py

Polling job scheduler that keeps all of its state on the filesystem.

Every job is a directory under the config root holding an executable ``run``,
a plain-text ``cfg`` interval in seconds and a ``tmr`` marker whose mtime is the
next time the job becomes due.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import tomli


APP_NAME = "awecron"
MARKER_NAME = "tmr"
INTERVAL_NAME = "cfg"
ENTRY_POINT_NAME = "run"
GLOBAL_CONFIG_NAME = "cfg"
SYSTEM_CONFIG_DIR = Path("/etc") / APP_NAME
CONFIG_KEYS = ("max", "min", "timeout")
INTEGER_RE = re.compile(r"^[+-]?[0-9]+$")

DUE = "due"
NOT_DUE = "not_due"
UNKNOWN = "unknown"


class AwecronError(Exception):
    """Base error for awecron."""


class ConfigError(AwecronError):
    """Global config or config directory problem."""


class CatalogError(AwecronError):
    """Job root could not be enumerated."""


class TimerStoreError(AwecronError):
    """Due marker could not be removed or written."""


class MarkerReadError(AwecronError):
    """Due marker is missing or unreadable."""


class IntervalError(AwecronError):
    """Job interval is missing, unparseable or not positive."""


def _log_prefix() -> str:
    try:
        return f"{APP_NAME} ({getpass.getuser()})"
    except Exception:
        return APP_NAME


def setup_logging(log_file: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(f"%(asctime)s {_log_prefix()} %(levelname)s %(message)s")
    if not logger.handlers:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file is not None and not any(
        isinstance(handler, logging.FileHandler)
        and handler.baseFilename == os.path.abspath(log_file)
        for handler in logger.handlers
    ):
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


logger = setup_logging()


@dataclass(frozen=True)
class GlobalConfig:
    max: int
    min: int
    timeout: int


@dataclass(frozen=True)
class DueCheck:
    state: str  # due | not_due | unknown
    deadline: Optional[int] = None


@dataclass
class ProcessResult:
    return_code: int
    stderr: str
    timed_out: bool
    duration_seconds: float
    error: Optional[str] = None


@dataclass
class ExecResult:
    job_name: str
    success: bool
    return_code: int
    duration_seconds: float
    stderr: str
    error: Optional[str] = None


@dataclass
class RunOutcome:
    job_dir: Path
    ran: bool
    succeeded: bool
    next_deadline: Optional[int]


def job_name(job_dir: Path) -> str:
    return Path(job_dir).name


def unix_now() -> int:
    return int(time.time())


def format_timestamp(ts: int) -> str:
    return datetime.fromtimestamp(ts).astimezone().isoformat()


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def default_config_dirs() -> List[Path]:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    user_config = Path(xdg) if xdg else Path.home() / ".config"
    return [user_config / APP_NAME, SYSTEM_CONFIG_DIR]


def resolve_config_dir(candidates: Optional[Sequence[Path]] = None) -> Path:
    for candidate in candidates if candidates is not None else default_config_dirs():
        candidate = Path(candidate)
        if not candidate.exists():
            continue
        if not candidate.is_dir():
            raise ConfigError(f"Error: global config directory {candidate} is not a directory.")
        return candidate
    raise ConfigError("Error: global config directory does not exist.")


def ensure_positive_int(value: Any, field_path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < 1:
        raise ConfigError(f"Error: {field_path} must be >= 1.")
    return value


def load_config(config_path: Path) -> GlobalConfig:
    if not config_path.is_file():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    try:
        payload = tomli.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Error: Failed to read {config_path}: {exc}") from exc
    except tomli.TOMLDecodeError as exc:
        raise ConfigError(f"Error: Failed to parse TOML in {config_path}: {exc}") from exc

    # Keys match case-insensitively, so "max" and "Max" name the same field.
    values: Dict[str, Any] = {}
    for key, value in payload.items():
        normalized = key.strip().lower()
        if normalized not in CONFIG_KEYS:
            raise ConfigError(f'Error: Unknown key "{key}" in {config_path}.')
        if normalized in values:
            raise ConfigError(f'Error: Duplicate key "{key}" in {config_path}.')
        values[normalized] = value

    missing = [key.capitalize() for key in CONFIG_KEYS if key not in values]
    if missing:
        raise ConfigError(f"Error: Missing keys in {config_path}: {missing}.")

    config = GlobalConfig(
        max=ensure_positive_int(values["max"], "Max"),
        min=ensure_positive_int(values["min"], "Min"),
        timeout=ensure_positive_int(values["timeout"], "Timeout"),
    )
    if config.min > config.max:
        raise ConfigError(f"Error: Min ({config.min}) must not exceed Max ({config.max}).")
    return config


# ---------------------------------------------------------------------------
# Timer store
# ---------------------------------------------------------------------------


class TimerStore(ABC):
    """Maps a job directory to its due timestamp."""

    @abstractmethod
    def read_due(self, job_dir: Path) -> int:
        """Return the due timestamp or raise MarkerReadError."""

    @abstractmethod
    def clear_due(self, job_dir: Path) -> None:
        """Remove the due marker or raise TimerStoreError."""

    @abstractmethod
    def write_due(self, job_dir: Path, timestamp: int) -> None:
        """Create the due marker at ``timestamp`` or raise TimerStoreError."""


class FileTimerStore(TimerStore):
    """Due timestamps stored as the mtime of ``<job>/tmr``."""

    def marker_path(self, job_dir: Path) -> Path:
        return Path(job_dir) / MARKER_NAME

    def read_due(self, job_dir: Path) -> int:
        try:
            return int(self.marker_path(job_dir).stat().st_mtime)
        except OSError as exc:
            raise MarkerReadError(f"cannot read modification time of {MARKER_NAME}: {exc}") from exc

    def clear_due(self, job_dir: Path) -> None:
        try:
            self.marker_path(job_dir).unlink()
        except OSError as exc:
            raise TimerStoreError(
                f"[{job_name(job_dir)}] Failed to remove {MARKER_NAME}: {exc}"
            ) from exc

    def write_due(self, job_dir: Path, timestamp: int) -> None:
        marker = self.marker_path(job_dir)
        try:
            marker.touch()
        except OSError as exc:
            raise TimerStoreError(
                f"[{job_name(job_dir)}] Failed to write {MARKER_NAME}: {exc}"
            ) from exc
        try:
            os.utime(marker, (timestamp, timestamp))
        except (OSError, OverflowError, ValueError) as exc:
            # A freshly touched marker would read as due right away.
            try:
                marker.unlink()
            except FileNotFoundError:
                pass
            raise TimerStoreError(
                f"[{job_name(job_dir)}] Failed to write {MARKER_NAME}: {exc}"
            ) from exc


# ---------------------------------------------------------------------------
# Job catalog
# ---------------------------------------------------------------------------


def _list_subdirs(root: Path) -> List[Path]:
    try:
        with os.scandir(root) as entries:
            return sorted(Path(entry.path) for entry in entries if entry.is_dir())
    except OSError as exc:
        raise CatalogError(f"Error: Failed to enumerate job root {root}: {exc}") from exc


def discover_jobs(root: Path) -> List[Path]:
    return [path for path in _list_subdirs(root) if (path / MARKER_NAME).exists()]


def find_job(root: Path, name: str) -> Path:
    for path in _list_subdirs(root):
        if path.name == name:
            return path
    raise AwecronError(f'Unknown job "{name}".')


# ---------------------------------------------------------------------------
# Due evaluation, execution and rescheduling
# ---------------------------------------------------------------------------


def evaluate_job(job_dir: Path, store: TimerStore, now: Optional[int] = None) -> DueCheck:
    try:
        due_at = store.read_due(job_dir)
    except MarkerReadError as exc:
        logger.error("[%s] %s", job_name(job_dir), exc)
        return DueCheck(state=UNKNOWN)
    current = unix_now() if now is None else now
    if due_at <= current:
        return DueCheck(state=DUE)
    return DueCheck(state=NOT_DUE, deadline=due_at)


def _kill_process_tree(process: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.warning("Failed to kill process group %s: %s", process.pid, exc)
    process.kill()


def run_entry_point(
    executable: Path,
    timeout: int,
    cwd: Optional[Path] = None,
    env_overrides: Optional[Dict[str, str]] = None,
) -> ProcessResult:
    started = time.monotonic()
    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)
    try:
        process = subprocess.Popen(
            [str(Path(executable).absolute())],
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            env=env,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        return ProcessResult(
            return_code=-2,
            stderr=str(exc),
            timed_out=False,
            duration_seconds=time.monotonic() - started,
            error="exception",
        )

    try:
        _, stderr = process.communicate(timeout=timeout)
        timed_out = False
    except subprocess.TimeoutExpired:
        _kill_process_tree(process)
        _, stderr = process.communicate()
        timed_out = True

    return ProcessResult(
        return_code=process.returncode,
        stderr=(stderr or b"").decode("utf-8", errors="replace"),
        timed_out=timed_out,
        duration_seconds=time.monotonic() - started,
        error="timeout" if timed_out else None,
    )


def execute_job(job_dir: Path, timeout: int, store: TimerStore) -> ExecResult:
    """
    Run the job's entry point.

    The due marker is removed first so a crash mid-run leaves the job disabled.
    A failed or timed-out job stays disabled until an operator re-enables it.
    """
    name = job_name(job_dir)
    store.clear_due(job_dir)

    logger.info("[%s] Running %s (timeout=%ss)", name, ENTRY_POINT_NAME, timeout)
    result = run_entry_point(
        Path(job_dir) / ENTRY_POINT_NAME,
        timeout,
        cwd=Path(job_dir),
        env_overrides={"AWECRON_JOB_NAME": name, "AWECRON_JOB_DIR": str(job_dir)},
    )
    success = result.error is None and result.return_code == 0

    if success:
        logger.info("[%s] [%s] Run succeeded in %.2fs", name, result.return_code, result.duration_seconds)
    elif result.timed_out:
        logger.error("[%s] Run timed out after %s seconds, stopped", name, timeout)
    elif result.error == "exception":
        logger.error("[%s] Failed to start %s: %s", name, ENTRY_POINT_NAME, result.stderr)
    else:
        logger.error("[%s] [%s] Run returned an error", name, result.return_code)

    if not success and result.error != "exception" and result.stderr.strip():
        logger.info("[%s] stderr output:\n==========\n%s\n==========", name, result.stderr.rstrip())

    return ExecResult(
        job_name=name,
        success=success,
        return_code=result.return_code,
        duration_seconds=result.duration_seconds,
        stderr=result.stderr,
        error=result.error,
    )


def read_interval(job_dir: Path, now: Optional[int] = None) -> int:
    path = Path(job_dir) / INTERVAL_NAME
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        raise IntervalError(f"Failed to read interval file {INTERVAL_NAME}: {exc}") from exc
    if not INTEGER_RE.match(raw):
        raise IntervalError(f'Interval must be an integer number of seconds, got "{raw}".')
    interval = int(raw)
    if interval <= 0:
        raise IntervalError(f"Interval must be > 0, got {interval}.")
    # The next due time must fit the platform time_t and datetime ranges.
    try:
        datetime.fromtimestamp((unix_now() if now is None else now) + interval)
    except (OverflowError, OSError, ValueError) as exc:
        raise IntervalError(f"Interval {interval} is too large: {exc}") from exc
    return interval


def reschedule_job(job_dir: Path, store: TimerStore, now: Optional[int] = None) -> Optional[int]:
    """Write the next due time; None means the job stays disabled."""
    current = unix_now() if now is None else now
    try:
        interval = read_interval(job_dir, now=current)
    except IntervalError as exc:
        logger.error("[%s] %s Job left disabled.", job_name(job_dir), exc)
        return None
    deadline = current + interval
    store.write_due(job_dir, deadline)
    logger.info("[%s] Next run at %s", job_name(job_dir), format_timestamp(deadline))
    return deadline


def process_job(job_dir: Path, config: GlobalConfig, store: TimerStore) -> RunOutcome:
    check = evaluate_job(job_dir, store)
    if check.state != DUE:
        return RunOutcome(job_dir=job_dir, ran=False, succeeded=False, next_deadline=check.deadline)

    result = execute_job(job_dir, config.timeout, store)
    if not result.success:
        return RunOutcome(job_dir=job_dir, ran=True, succeeded=False, next_deadline=None)
    return RunOutcome(
        job_dir=job_dir,
        ran=True,
        succeeded=True,
        next_deadline=reschedule_job(job_dir, store),
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def run_cycle(root: Path, config: GlobalConfig, store: TimerStore) -> List[RunOutcome]:
    """
    Discover jobs, evaluate each on its own thread and wait for all of them.

    Workers only post results to a queue; the caller sees the complete set once
    every thread has been joined. Fatal errors raised inside a worker are
    re-raised here after the barrier.
    """
    jobs = discover_jobs(root)
    results: Queue[Tuple[Path, Optional[RunOutcome], Optional[BaseException]]] = Queue()

    def work(job_dir: Path) -> None:
        try:
            results.put((job_dir, process_job(job_dir, config, store), None))
        except Exception as exc:
            results.put((job_dir, None, exc))

    threads = [
        threading.Thread(target=work, args=(job_dir,), name=f"awecron-{job_name(job_dir)}")
        for job_dir in jobs
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    outcomes: List[RunOutcome] = []
    fatal: Optional[BaseException] = None
    while True:
        try:
            _, outcome, error = results.get_nowait()
        except Empty:
            break
        if error is not None:
            fatal = fatal or error
            continue
        if outcome is not None:
            outcomes.append(outcome)
    if fatal is not None:
        raise fatal
    return outcomes


def collect_deadlines(outcomes: Iterable[RunOutcome]) -> List[int]:
    return [outcome.next_deadline for outcome in outcomes if outcome.next_deadline is not None]


def compute_sleep(deadlines: Iterable[int], config: GlobalConfig, now: Optional[int] = None) -> int:
    pending = list(deadlines)
    if not pending:
        return config.max
    raw = min(pending) - (unix_now() if now is None else now)
    if raw < config.min:
        return config.min
    if raw > config.max:
        return config.max
    return raw


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_validate(config_dir: Path) -> int:
    config = load_config(config_dir / GLOBAL_CONFIG_NAME)
    jobs = discover_jobs(config_dir)
    print(f"Config valid: {config_dir / GLOBAL_CONFIG_NAME}")
    print(f"Max: {config.max}s, Min: {config.min}s, Timeout: {config.timeout}s")
    print(f"Enabled jobs: {len(jobs)}")
    for job_dir in jobs:
        print(f"- {job_name(job_dir)}")
    return 0


def command_status(config_dir: Path, store: TimerStore) -> int:
    now = unix_now()
    job_dirs = _list_subdirs(config_dir)
    if not job_dirs:
        print("No jobs found.")
        return 0
    for job_dir in job_dirs:
        try:
            due_at: Optional[int] = store.read_due(job_dir)
        except MarkerReadError:
            due_at = None
        if due_at is None:
            state = "disabled"
        elif due_at <= now:
            state = "due"
        else:
            state = f"next run {format_timestamp(due_at)} (in {due_at - now}s)"
        try:
            interval_text = f"every {read_interval(job_dir)}s"
        except IntervalError as exc:
            interval_text = f"invalid interval: {exc}"
        print(f"- {job_name(job_dir)}: {state} | {interval_text}")
    return 0


def command_enable(config_dir: Path, name: str, delay: int, store: TimerStore) -> int:
    job_dir = find_job(config_dir, name)
    due_at = unix_now() + delay
    store.write_due(job_dir, due_at)
    logger.info("[%s] Enabled, due at %s", name, format_timestamp(due_at))
    return 0


def command_disable(config_dir: Path, name: str, store: TimerStore) -> int:
    job_dir = find_job(config_dir, name)
    if not (job_dir / MARKER_NAME).exists():
        logger.info("[%s] Already disabled.", name)
        return 0
    store.clear_due(job_dir)
    logger.info("[%s] Disabled.", name)
    return 0


def command_run(config_dir: Path, store: TimerStore) -> int:
    config = load_config(config_dir / GLOBAL_CONFIG_NAME)
    outcomes = run_cycle(config_dir, config, store)
    sleep_seconds = compute_sleep(collect_deadlines(outcomes), config)
    print(f"Jobs evaluated: {len(outcomes)}")
    print(f"Jobs run: {sum(1 for outcome in outcomes if outcome.ran)}")
    print(f"Next pass in: {sleep_seconds}s")
    return 0 if all(outcome.succeeded for outcome in outcomes if outcome.ran) else 1


def command_daemon(
    config_dir: Path,
    store: TimerStore,
    cycles: Optional[int] = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> int:
    config = load_config(config_dir / GLOBAL_CONFIG_NAME)
    logger.info(
        "Daemon started in %s (max=%ss, min=%ss, timeout=%ss)",
        config_dir,
        config.max,
        config.min,
        config.timeout,
    )
    completed = 0
    try:
        while cycles is None or completed < cycles:
            deadlines = collect_deadlines(run_cycle(config_dir, config, store))
            if not deadlines:
                logger.info("No pending jobs, sleeping max time (%ss)", config.max)
            sleep_seconds = compute_sleep(deadlines, config)
            completed += 1
            if cycles is not None and completed >= cycles:
                break
            logger.info("Sleeping %ss", sleep_seconds)
            sleep_fn(sleep_seconds)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="awecron filesystem-backed job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config-dir",
        help=f"Config root holding cfg and job directories (default: ~/.config/{APP_NAME} or {SYSTEM_CONFIG_DIR})",
    )
    parser.add_argument("--log-file", help="Also append log output to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate global config and list enabled jobs")
    subparsers.add_parser("status", help="Show due state and interval of every job")
    subparsers.add_parser("run", help="Run a single scheduling pass")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduling loop")
    daemon_parser.add_argument("--cycles", type=int, help="Stop after this many passes")

    enable_parser = subparsers.add_parser("enable", help="Create a job's due marker")
    enable_parser.add_argument("job", help="Job directory name")
    enable_parser.add_argument(
        "--delay",
        type=int,
        default=0,
        help="Seconds from now until the job is due (default: 0)",
    )

    disable_parser = subparsers.add_parser("disable", help="Remove a job's due marker")
    disable_parser.add_argument("job", help="Job directory name")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.log_file:
        setup_logging(Path(args.log_file))
    store = FileTimerStore()

    try:
        config_dir = Path(args.config_dir).resolve() if args.config_dir else resolve_config_dir()
        if args.command == "validate":
            return command_validate(config_dir)
        if args.command == "status":
            return command_status(config_dir, store)
        if args.command == "run":
            return command_run(config_dir, store)
        if args.command == "daemon":
            if args.cycles is not None and args.cycles <= 0:
                raise AwecronError("--cycles must be >= 1")
            return command_daemon(config_dir, store, cycles=args.cycles)
        if args.command == "enable":
            if args.delay < 0:
                raise AwecronError("--delay must be >= 0")
            return command_enable(config_dir, args.job, args.delay, store)
        if args.command == "disable":
            return command_disable(config_dir, args.job, store)
        raise AwecronError(f"Unsupported command: {args.command}")
    except AwecronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
