import logging
import re
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from fastapi import HTTPException
from sqlalchemy.orm import Session

from panelauth.auth.models import User
from panelauth.core import config
from panelauth.database.database import utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"

# provider name -> users column holding the provider-assigned id
PROVIDER_COLUMNS = {"google": "google_sub", "github": "github_id"}

MAX_USERNAME_LENGTH = 30
_USERNAME_STRIP = re.compile(r"[^a-z0-9_]")


@dataclass
class OAuthIdentity:
    provider: str
    provider_id: str
    email: str
    username_candidates: List[str] = field(default_factory=list)
    fallback_seed: str = ""
    avatar: Optional[str] = None


def sanitize_username(value: str | None) -> str:
    cleaned = _USERNAME_STRIP.sub("", (value or "").strip().lower()).strip("_")
    return cleaned[:MAX_USERNAME_LENGTH]


def _with_suffix(base: str, suffix: str) -> str:
    return base[: MAX_USERNAME_LENGTH - len(suffix)] + suffix


def resolve_username(candidates: Iterable[str], fallback_seed: str | None, exists: Callable[[str], bool]) -> str:
    """First free sanitized candidate, then numbered variants, then ``user_<seed>``,
    finally ``user_<random>`` until something is free."""
    bases = []
    for candidate in candidates:
        name = sanitize_username(candidate)
        if name and name not in bases:
            bases.append(name)

    for name in bases:
        if not exists(name):
            return name
    for name in bases:
        for n in range(1, 100):
            variant = _with_suffix(name, f"_{n}")
            if not exists(variant):
                return variant

    seed = sanitize_username(fallback_seed)
    if seed:
        name = f"user_{seed}"[:MAX_USERNAME_LENGTH]
        if not exists(name):
            return name
    alphabet = string.ascii_lowercase + string.digits
    while True:
        name = "user_" + "".join(secrets.choice(alphabet) for _ in range(6))
        if not exists(name):
            return name


def _email_local(email: str) -> str:
    return email.split("@", 1)[0] if email else ""


def _is_true(value: Any) -> bool:
    return value is True or str(value).lower() == "true"


async def verify_google_id_token(id_token: str) -> OAuthIdentity:
    if not config.GOOGLE_CLIENT_IDS:
        raise HTTPException(status_code=403, detail="Google login is not configured")
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
    except httpx.HTTPError:
        logger.exception("Google tokeninfo request failed")
        raise HTTPException(status_code=502, detail="Google is unreachable, try again later")
    if resp.status_code != 200:
        raise HTTPException(status_code=401, detail="Invalid Google credential")

    info = resp.json()
    if info.get("aud") not in config.GOOGLE_CLIENT_IDS:
        raise HTTPException(status_code=401, detail="Google credential was issued for another client")
    if info.get("iss") not in GOOGLE_ISSUERS:
        raise HTTPException(status_code=401, detail="Invalid Google credential issuer")
    if not _is_true(info.get("email_verified")):
        raise HTTPException(status_code=401, detail="Google email is not verified")
    sub, email = info.get("sub"), (info.get("email") or "").strip().lower()
    if not sub or not email:
        raise HTTPException(status_code=401, detail="Google credential is missing identity claims")

    local = _email_local(email)
    return OAuthIdentity(
        provider="google",
        provider_id=str(sub),
        email=email,
        username_candidates=[info.get("given_name"), info.get("name"), local, f"google_{str(sub)[-6:]}"],
        fallback_seed=local or str(sub)[-6:],
        avatar=info.get("picture"),
    )


async def exchange_github_code(code: str, redirect_uri: str | None = None) -> str:
    if not config.GITHUB_CLIENT_ID or not config.GITHUB_CLIENT_SECRET:
        raise HTTPException(status_code=403, detail="GitHub login is not configured")
    data = {
        "client_id": config.GITHUB_CLIENT_ID,
        "client_secret": config.GITHUB_CLIENT_SECRET,
        "code": code,
    }
    if redirect_uri or config.GITHUB_REDIRECT_URI:
        data["redirect_uri"] = redirect_uri or config.GITHUB_REDIRECT_URI
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(GITHUB_TOKEN_URL, data=data, headers={"Accept": "application/json"})
    except httpx.HTTPError:
        logger.exception("GitHub token exchange failed")
        raise HTTPException(status_code=502, detail="GitHub is unreachable, try again later")

    tokens = resp.json() if resp.status_code == 200 else {}
    if "error" in tokens or not tokens.get("access_token"):
        raise HTTPException(status_code=401, detail=tokens.get("error_description", "GitHub authorization failed"))
    return tokens["access_token"]


def _pick_github_email(emails: List[Dict[str, Any]]) -> Optional[str]:
    verified = [e for e in emails if e.get("verified") and e.get("email")]
    primary = next((e for e in verified if e.get("primary")), None)
    chosen = primary or (verified[0] if verified else None)
    return chosen["email"] if chosen else None


async def get_github_identity(access_token: str) -> OAuthIdentity:
    headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/vnd.github+json"}
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(f"{GITHUB_API_URL}/user", headers=headers)
            resp.raise_for_status()
            profile = resp.json()
            email = profile.get("email")
            if not email:
                emails_resp = await client.get(f"{GITHUB_API_URL}/user/emails", headers=headers)
                emails_resp.raise_for_status()
                email = _pick_github_email(emails_resp.json())
    except httpx.HTTPStatusError:
        raise HTTPException(status_code=401, detail="GitHub authorization failed")
    except httpx.HTTPError:
        logger.exception("GitHub profile request failed")
        raise HTTPException(status_code=502, detail="GitHub is unreachable, try again later")

    if not profile.get("id") or not email:
        raise HTTPException(status_code=400, detail="GitHub account has no verified email")
    github_id = str(profile["id"])
    email = email.strip().lower()
    local = _email_local(email)
    return OAuthIdentity(
        provider="github",
        provider_id=github_id,
        email=email,
        username_candidates=[profile.get("login"), profile.get("name"), local, f"github_{github_id[-6:]}"],
        fallback_seed=local or github_id[-6:],
        avatar=profile.get("avatar_url"),
    )


def match_oauth_account(db: Session, provider: str, provider_id: str, email: str) -> Optional[User]:
    column = getattr(User, PROVIDER_COLUMNS[provider])
    user = db.query(User).filter(column == provider_id).first()
    if user:
        return user
    user = db.query(User).filter(User.email == email.lower()).first()
    if not user:
        return None
    bound = getattr(user, PROVIDER_COLUMNS[provider])
    if bound and bound != provider_id:
        logger.warning("%s identity conflict for user %s", provider, user.id)
        raise HTTPException(status_code=409, detail="This email is already linked to another account of this provider")
    return user


def bind_oauth_identity(db: Session, user: User, provider: str, provider_id: str) -> None:
    now = utcnow()
    setattr(user, PROVIDER_COLUMNS[provider], provider_id)
    user.oauth_provider = provider
    user.first_oauth_login_at = user.first_oauth_login_at or now
    user.last_oauth_login_at = now
    db.add(user); db.commit(); db.refresh(user)
