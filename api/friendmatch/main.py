import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from . import config
from .database import SessionLocal
from .repo import SqlCandidateSource, SqlMatchStore, SqlProfileSource, SqlUserEligibilitySource
from .routes import include_modular_routers
from .services.generation import EngineSettings
from .services.orchestrator import BatchOrchestrator

logger = logging.getLogger(__name__)

app = FastAPI(title="Friend Match Engine")
include_modular_routers(app)


def build_orchestrator(session_factory=SessionLocal) -> BatchOrchestrator:
    return BatchOrchestrator(
        eligibility=SqlUserEligibilitySource(session_factory, default_quota=config.MATCH_QUOTA),
        profiles=SqlProfileSource(session_factory),
        candidates=SqlCandidateSource(session_factory),
        store=SqlMatchStore(session_factory, default_quota=config.MATCH_QUOTA),
        settings=EngineSettings(),
        batch_size=config.MATCH_BATCH_SIZE,
        batch_delay_ms=config.MATCH_BATCH_DELAY_MS,
        run_timeout_seconds=config.MATCH_RUN_TIMEOUT_SECONDS or None,
        timezone_name=config.MATCH_TIMEZONE,
    )


def run_migrations() -> None:
    migrations_dir = config.MIGRATIONS_DIR
    if not migrations_dir.exists() or not migrations_dir.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    files = sorted([f.name for f in migrations_dir.iterdir() if f.is_file() and f.suffix == ".sql"])
    with SessionLocal() as db:
        for fname in files:
            sql = (migrations_dir / fname).read_text(encoding="utf-8")
            db.execute(text(sql))
        db.commit()
    logger.info("Applied %s migration file(s) from %s", len(files), migrations_dir)


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@app.on_event("startup")
def on_startup() -> None:
    wait_for_db()
    run_migrations()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
