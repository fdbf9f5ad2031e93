import hmac

from fastapi import Header, HTTPException

from . import config


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or not hmac.compare_digest(token, admin_token):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        return None
    return parts[1].strip()


def require_job_caller(
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> str:
    """Admit the weekly scheduler (cron secret bearer) or an operator (admin token)."""
    bearer = _extract_bearer(authorization)
    if bearer and config.CRON_SECRET and hmac.compare_digest(bearer, config.CRON_SECRET):
        return "cron"
    validate_admin_token(x_admin_token, config.ADMIN_TOKEN)
    return "admin"
