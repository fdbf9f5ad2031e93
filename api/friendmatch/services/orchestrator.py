"""Weekly batch run: enumerate users, fan out per-user generation, aggregate a report."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from .. import config
from ..errors import UNEXPECTED_ERROR_KIND, FatalEnumerationError, MatchEngineError, NoEligibleCandidatesError, PersistenceError
from ..sources import CandidateSource, MatchStore, ProfileSource, UserEligibilitySource
from .cycles import current_cycle, parse_cycle
from .generation import EngineSettings, generate_matches_for_user

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {RunState.COMPLETED, RunState.FAILED}


class FailureEntry(NamedTuple):
    user_id: str
    error_kind: str
    message: str = ""


@dataclass
class BatchRunReport:
    cycle: str
    state: RunState = RunState.NOT_STARTED
    users_processed: int = 0
    users_succeeded: int = 0
    users_failed: int = 0
    matches_created: int = 0
    users_skipped: int = 0
    deleted_matches: int = 0
    cancelled: bool = False
    failures: list[FailureEntry] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _ensure_mutable(self) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"run report for {self.cycle} is already {self.state.value}")

    def start(self) -> None:
        with self._lock:
            if self.state != RunState.NOT_STARTED:
                raise RuntimeError(f"run for {self.cycle} already started")
            self.state = RunState.RUNNING
            self.started_at = datetime.now(timezone.utc)

    def record_success(self, user_id: str, matches_created: int) -> None:
        with self._lock:
            self._ensure_mutable()
            self.users_processed += 1
            self.users_succeeded += 1
            self.matches_created += matches_created

    def record_failure(self, user_id: str, error_kind: str, message: str = "") -> None:
        with self._lock:
            self._ensure_mutable()
            self.users_processed += 1
            self.users_failed += 1
            self.failures.append(FailureEntry(user_id, error_kind, message))

    def record_deleted(self, count: int) -> None:
        with self._lock:
            self._ensure_mutable()
            self.deleted_matches += count

    def mark_cancelled(self, skipped: int) -> None:
        with self._lock:
            self._ensure_mutable()
            self.cancelled = True
            self.users_skipped += skipped

    def complete(self) -> None:
        with self._lock:
            self._ensure_mutable()
            self.state = RunState.COMPLETED
            self.finished_at = datetime.now(timezone.utc)

    def fail(self, error: str) -> None:
        with self._lock:
            self._ensure_mutable()
            self.state = RunState.FAILED
            self.error = error
            self.finished_at = datetime.now(timezone.utc)

    @property
    def duration_ms(self) -> int:
        if not self.started_at or not self.finished_at:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def failure_rate(self) -> float:
        if self.users_processed <= 0:
            return 0.0
        return round(self.users_failed / self.users_processed, 4)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "cycle": self.cycle,
                "state": self.state.value,
                "users_processed": self.users_processed,
                "users_succeeded": self.users_succeeded,
                "users_failed": self.users_failed,
                "matches_created": self.matches_created,
                "users_skipped": self.users_skipped,
                "deleted_matches": self.deleted_matches,
                "cancelled": self.cancelled,
                "failure_rate": self.failure_rate,
                "failures": [f._asdict() for f in self.failures],
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "duration_ms": self.duration_ms,
                "error": self.error,
            }


def _batches(user_ids: list[str], size: int) -> list[list[str]]:
    return [user_ids[i : i + size] for i in range(0, len(user_ids), size)]


class BatchOrchestrator:
    def __init__(
        self,
        *,
        eligibility: UserEligibilitySource,
        profiles: ProfileSource,
        candidates: CandidateSource,
        store: MatchStore,
        settings: EngineSettings | None = None,
        batch_size: int = config.MATCH_BATCH_SIZE,
        batch_delay_ms: int = config.MATCH_BATCH_DELAY_MS,
        run_timeout_seconds: float | None = config.MATCH_RUN_TIMEOUT_SECONDS or None,
        timezone_name: str = config.MATCH_TIMEZONE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if batch_delay_ms < 0:
            raise ValueError("batch_delay_ms must not be negative")
        self.eligibility = eligibility
        self.profiles = profiles
        self.candidates = candidates
        self.store = store
        self.settings = settings or EngineSettings()
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self.run_timeout_seconds = run_timeout_seconds
        self.timezone_name = timezone_name

    def run(
        self,
        cycle: str | None = None,
        *,
        force: bool = False,
        stop_event: threading.Event | None = None,
        now: datetime | None = None,
    ) -> BatchRunReport:
        now = now or datetime.now(timezone.utc)
        cycle = cycle or current_cycle(now, self.timezone_name)
        parse_cycle(cycle)
        stop_event = stop_event or threading.Event()
        deadline = time.monotonic() + self.run_timeout_seconds if self.run_timeout_seconds else None

        report = BatchRunReport(cycle=cycle)
        report.start()
        logger.info("[MATCHING] starting batch generation cycle=%s force=%s", cycle, force)

        if force:
            try:
                report.record_deleted(int(self.store.delete_cycle(cycle) or 0))
            except Exception as exc:
                report.fail(f"could not clear cycle {cycle}: {exc}")
                raise PersistenceError(f"could not clear cycle {cycle}: {exc}") from exc
            logger.warning("[MATCHING] forced re-run cycle=%s deleted=%s", cycle, report.deleted_matches)

        try:
            user_ids = list(dict.fromkeys(self.eligibility.users_needing_matches(cycle)))
        except Exception as exc:
            report.fail(f"user enumeration failed: {exc}")
            logger.error("[MATCHING] cannot enumerate users for cycle=%s: %s", cycle, exc)
            raise FatalEnumerationError(f"user enumeration failed: {exc}") from exc

        logger.info("[MATCHING] %s users need matches for cycle=%s", len(user_ids), cycle)
        if not user_ids:
            report.complete()
            return report

        batches = _batches(user_ids, self.batch_size)
        with ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="match-worker") as pool:
            for index, batch in enumerate(batches):
                if index > 0 and self.batch_delay_ms:
                    stop_event.wait(self.batch_delay_ms / 1000.0)
                if stop_event.is_set() or (deadline is not None and time.monotonic() >= deadline):
                    skipped = sum(len(b) for b in batches[index:])
                    report.mark_cancelled(skipped)
                    logger.warning("[MATCHING] run cancelled cycle=%s skipped_users=%s", cycle, skipped)
                    break

                logger.info("[MATCHING] processing batch %s/%s size=%s", index + 1, len(batches), len(batch))
                futures = [pool.submit(self._process_user, user_id, cycle, report, now) for user_id in batch]
                wait(futures)

        report.complete()
        logger.info(
            "[MATCHING] batch generation complete cycle=%s matches=%s succeeded=%s failed=%s duration_ms=%s",
            cycle,
            report.matches_created,
            report.users_succeeded,
            report.users_failed,
            report.duration_ms,
        )
        return report

    def _process_user(self, user_id: str, cycle: str, report: BatchRunReport, now: datetime) -> None:
        try:
            outcome = generate_matches_for_user(
                user_id,
                cycle,
                profiles=self.profiles,
                candidates=self.candidates,
                store=self.store,
                settings=self.settings,
                now=now,
            )
        except NoEligibleCandidatesError:
            logger.info("[MATCHING] no eligible candidates user=%s cycle=%s", user_id, cycle)
            report.record_success(user_id, 0)
        except MatchEngineError as exc:
            logger.warning("[MATCHING] user=%s failed kind=%s: %s", user_id, exc.kind, exc.message)
            report.record_failure(user_id, exc.kind, exc.message)
        except Exception as exc:
            logger.exception("[MATCHING] unexpected error for user=%s", user_id)
            report.record_failure(user_id, UNEXPECTED_ERROR_KIND, str(exc))
        else:
            report.record_success(user_id, outcome.persisted)
