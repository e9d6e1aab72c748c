from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.orm import Session

from panelauth.auth.models import LoginLog

REASON_ACCOUNT_NOT_FOUND = "account not found"
REASON_PASSWORD_INCORRECT = "password incorrect"
REASON_ACCOUNT_EXPIRED = "account expired"
REASON_ACCOUNT_DISABLED = "account disabled"
REASON_TWO_FACTOR_FAILED = "two-factor verification failed"


@dataclass(frozen=True)
class ClientContext:
    ip: str = ""
    user_agent: str = ""


def record_login(db: Session, user_id, ctx: ClientContext, success: bool, method: str, reason: str | None = None):
    entry = LoginLog(
        user_id=user_id,
        login_ip=ctx.ip or None,
        user_agent=(ctx.user_agent or "")[:512] or None,
        login_status=1 if success else 0,
        failure_reason=reason,
        login_method=method,
    )
    db.add(entry); db.commit()
    return entry


def client_context(request: Request) -> ClientContext:
    forwarded = request.headers.get("cf-connecting-ip") or request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() or (request.client.host if request.client else "")
    return ClientContext(ip=ip, user_agent=request.headers.get("user-agent", ""))
