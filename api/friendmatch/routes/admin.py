import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder

from ..deps import require_job_caller
from ..errors import FatalEnumerationError, MatchEngineError, NoEligibleCandidatesError, PersistenceError, ValidationError
from ..schemas import MatchOut, UserGenerationResponse
from ..services.cycles import current_cycle, parse_cycle
from ..services.generation import generate_matches_for_user

logger = logging.getLogger(__name__)

router = APIRouter()


def _json(data: Any) -> Any:
    return jsonable_encoder(data)


def _checked_cycle(cycle: str | None) -> str | None:
    if not cycle:
        return None
    try:
        parse_cycle(cycle)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return cycle


@router.post("/admin/matches/run-weekly")
def run_weekly_matching(
    cycle: str | None = None,
    force: bool = False,
    caller: str = Depends(require_job_caller),
) -> dict[str, Any]:
    from .. import main as m

    cycle = _checked_cycle(cycle)
    orchestrator = m.build_orchestrator()
    logger.info("[MATCHING] weekly run requested by=%s cycle=%s force=%s", caller, cycle or "current", force)
    try:
        report = orchestrator.run(cycle, force=force)
    except (FatalEnumerationError, PersistenceError) as exc:
        raise HTTPException(
            status_code=503,
            detail={"success": False, "error": "Batch match generation failed", "kind": exc.kind, "details": exc.message},
        )

    result = report.to_dict()
    if not report.users_processed and not report.cancelled:
        message = f"No users need matches for week {report.cycle}"
    else:
        message = f"Batch match generation completed for week {report.cycle}"
    return _json({"success": True, "message": message, "result": result})


@router.post("/admin/matches/generate/{user_id}")
def generate_for_user(
    user_id: str,
    cycle: str | None = None,
    dry_run: bool = False,
    caller: str = Depends(require_job_caller),
) -> dict[str, Any]:
    from .. import main as m

    logger.info("[MATCHING] single-user generation requested by=%s user=%s cycle=%s dry_run=%s", caller, user_id, cycle or "current", dry_run)
    orchestrator = m.build_orchestrator()
    cycle = _checked_cycle(cycle) or current_cycle(tz=orchestrator.timezone_name)
    try:
        outcome = generate_matches_for_user(
            user_id,
            cycle,
            profiles=orchestrator.profiles,
            candidates=orchestrator.candidates,
            store=orchestrator.store,
            settings=orchestrator.settings,
            persist=not dry_run,
        )
    except NoEligibleCandidatesError:
        return _json(UserGenerationResponse(user_id=user_id, match_cycle=cycle, message="No candidates found"))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"kind": exc.kind, "message": exc.message})
    except MatchEngineError as exc:
        raise HTTPException(status_code=502, detail={"kind": exc.kind, "message": exc.message})

    return _json(
        UserGenerationResponse(
            user_id=user_id,
            match_cycle=cycle,
            persisted=outcome.persisted,
            matches=[
                MatchOut(
                    candidate_user_id=r.candidate_user_id,
                    overall_score=round(r.overall_score, 6),
                    match_cycle=r.match_cycle,
                    score_breakdown=r.score_breakdown.to_dict(),
                )
                for r in outcome.selected
            ],
            message="Dry run; nothing persisted" if dry_run else None,
        )
    )
