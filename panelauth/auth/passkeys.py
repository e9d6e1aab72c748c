import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    base64url_to_bytes,
    bytes_to_base64url,
    decode_credential_public_key,
    parse_client_data_json,
)
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from panelauth.auth.challenge_store import ChallengeStore
from panelauth.auth.models import Passkey, User
from panelauth.core import config
from panelauth.database.database import utcnow

logger = logging.getLogger(__name__)

REGISTRATION = "registration"
AUTHENTICATION = "authentication"
CEREMONY_TIMEOUT_MS = 120000
SUPPORTED_ALGS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]
_MALFORMED = (WebAuthnException, ValueError, KeyError, TypeError)


class PasskeyVerificationError(HTTPException):
    """Ceremony failure that should be audited against ``user_id`` when known."""

    def __init__(self, status_code: int, detail: str, user_id: Optional[int] = None):
        super().__init__(status_code=status_code, detail=detail)
        self.user_id = user_id


@dataclass(frozen=True)
class SignCountVerdict:
    ok: bool
    new_count: int
    supported: bool = True


def check_sign_count(stored: int, reported: int) -> SignCountVerdict:
    """Authenticators that always report 0 do not implement the counter."""
    stored = stored or 0
    reported = reported or 0
    if stored == 0 and reported == 0:
        return SignCountVerdict(ok=True, new_count=0, supported=False)
    if reported < stored:
        return SignCountVerdict(ok=False, new_count=stored)
    return SignCountVerdict(ok=True, new_count=max(stored, reported))


def _challenge_key(challenge: str) -> str:
    return f"passkey_challenge_{challenge}"


def expected_rp(request: Request) -> tuple[str, str]:
    rp_id = config.PASSKEY_RP_ID or request.url.hostname or "localhost"
    origin = config.PASSKEY_ORIGIN or f"{request.url.scheme}://{request.url.netloc}"
    return rp_id, origin


def _transports(raw: str | None) -> list:
    if not raw:
        return []
    try:
        values = json.loads(raw)
    except ValueError:
        return []
    out = []
    for value in values if isinstance(values, list) else []:
        try:
            out.append(AuthenticatorTransport(value))
        except ValueError:
            continue
    return out


def _descriptor(passkey: Passkey) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(
        id=base64url_to_bytes(passkey.credential_id),
        transports=_transports(passkey.transports) or None,
    )


def _client_challenge(credential: Dict[str, Any]) -> str:
    try:
        client_data = parse_client_data_json(base64url_to_bytes(credential["response"]["clientDataJSON"]))
    except _MALFORMED:
        raise HTTPException(status_code=400, detail="Malformed passkey response")
    return bytes_to_base64url(client_data.challenge)


def list_passkeys(db: Session, user_id: int):
    return db.query(Passkey).filter(Passkey.user_id == user_id).order_by(Passkey.created_at.desc()).all()


def delete_passkey(db: Session, user_id: int, passkey_id: int) -> bool:
    count = (
        db.query(Passkey)
        .filter(Passkey.id == passkey_id, Passkey.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return count == 1


def registration_options(db: Session, store: ChallengeStore, user: User, rp_id: str, origin: str) -> Dict[str, Any]:
    challenge = secrets.token_bytes(32)
    options = generate_registration_options(
        rp_id=rp_id,
        rp_name=config.SITE_NAME,
        user_id=str(user.id).encode(),
        user_name=user.email,
        user_display_name=user.username or user.email,
        challenge=challenge,
        timeout=CEREMONY_TIMEOUT_MS,
        attestation=AttestationConveyancePreference.NONE,
        authenticator_selection=AuthenticatorSelectionCriteria(
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        ),
        exclude_credentials=[_descriptor(p) for p in list_passkeys(db, user.id)],
        supported_pub_key_algs=SUPPORTED_ALGS,
    )
    encoded = bytes_to_base64url(challenge)
    store.set(
        _challenge_key(encoded),
        {
            "type": REGISTRATION,
            "userId": user.id,
            "challenge": encoded,
            "rpId": rp_id,
            "origin": origin,
            "createdAt": utcnow().isoformat(),
        },
        config.PASSKEY_CHALLENGE_TTL,
    )
    return json.loads(options_to_json(options))


def verify_registration(
    db: Session, store: ChallengeStore, user: User, credential: Dict[str, Any], device_name: str | None
) -> Passkey:
    challenge = _client_challenge(credential)
    # Consumed up front so every outcome below leaves no reusable challenge
    record = store.take(_challenge_key(challenge))
    if not record:
        raise HTTPException(status_code=400, detail="Passkey challenge expired or not found")
    if record.get("type") != REGISTRATION or record.get("userId") != user.id:
        raise HTTPException(status_code=400, detail="Passkey challenge does not match")

    try:
        verified = verify_registration_response(
            credential=credential,
            expected_challenge=base64url_to_bytes(challenge),
            expected_rp_id=record["rpId"],
            expected_origin=record["origin"],
            supported_pub_key_algs=SUPPORTED_ALGS,
        )
    except _MALFORMED as exc:
        logger.warning("Passkey registration failed for user %s: %s", user.id, exc)
        raise HTTPException(status_code=400, detail="Passkey registration verification failed")

    credential_id = bytes_to_base64url(verified.credential_id)
    if db.query(Passkey).filter(Passkey.credential_id == credential_id).first():
        raise HTTPException(status_code=409, detail="This passkey is already registered")

    transports = (credential.get("response") or {}).get("transports") or []
    passkey = Passkey(
        user_id=user.id,
        credential_id=credential_id,
        public_key=bytes_to_base64url(verified.credential_public_key),
        alg=int(decode_credential_public_key(verified.credential_public_key).alg),
        user_handle=bytes_to_base64url(str(user.id).encode()),
        rp_id=record["rpId"],
        transports=json.dumps(transports),
        sign_count=verified.sign_count,
        device_name=((device_name or "").strip() or "Passkey")[:64],
        aaguid=verified.aaguid,
        backup_eligible=verified.credential_device_type == "multi_device",
        backup_state=bool(verified.credential_backed_up),
    )
    db.add(passkey); db.commit(); db.refresh(passkey)
    logger.info("Passkey %s registered for user %s", passkey.id, user.id)
    return passkey


def authentication_options(db: Session, store: ChallengeStore, email: str | None, remember: bool, request: Request) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")
    user = db.query(User).filter(User.email == email).first()
    if not user:
        raise HTTPException(status_code=404, detail="Account not found")
    passkeys = list_passkeys(db, user.id)
    if not passkeys:
        raise HTTPException(status_code=400, detail="No passkey registered for this account")

    default_rp_id, origin = expected_rp(request)
    rp_id = next((p.rp_id for p in passkeys if p.rp_id), default_rp_id)
    challenge = secrets.token_bytes(32)
    options = generate_authentication_options(
        rp_id=rp_id,
        challenge=challenge,
        timeout=CEREMONY_TIMEOUT_MS,
        allow_credentials=[_descriptor(p) for p in passkeys],
        user_verification=UserVerificationRequirement.REQUIRED,
    )
    encoded = bytes_to_base64url(challenge)
    store.set(
        _challenge_key(encoded),
        {
            "type": AUTHENTICATION,
            "userId": user.id,
            "challenge": encoded,
            "rpId": rp_id,
            "origin": origin,
            "remember": bool(remember),
            "createdAt": utcnow().isoformat(),
        },
        config.PASSKEY_CHALLENGE_TTL,
    )
    return json.loads(options_to_json(options))


def verify_authentication(db: Session, store: ChallengeStore, credential: Dict[str, Any]) -> tuple[User, bool]:
    """Return the authenticated user and the remember flag chosen at options time."""
    challenge = _client_challenge(credential)
    record = store.take(_challenge_key(challenge))
    if not record or record.get("type") != AUTHENTICATION:
        raise HTTPException(status_code=400, detail="Passkey challenge expired or not found")

    credential_id = credential.get("rawId") or credential.get("id")
    passkey = db.query(Passkey).filter(Passkey.credential_id == credential_id).first() if credential_id else None
    if not passkey:
        raise PasskeyVerificationError(404, "Passkey not found", record.get("userId"))
    if passkey.user_id != record.get("userId"):
        raise PasskeyVerificationError(401, "Passkey does not belong to this account", record.get("userId"))

    try:
        # Counter policy is applied below, so the library's own check is disabled
        verified = verify_authentication_response(
            credential=credential,
            expected_challenge=base64url_to_bytes(challenge),
            expected_rp_id=record["rpId"],
            expected_origin=record["origin"],
            credential_public_key=base64url_to_bytes(passkey.public_key),
            credential_current_sign_count=0,
            require_user_verification=True,
        )
    except _MALFORMED as exc:
        logger.warning("Passkey assertion failed for user %s: %s", passkey.user_id, exc)
        raise PasskeyVerificationError(401, "Passkey verification failed", passkey.user_id)

    verdict = check_sign_count(passkey.sign_count, verified.new_sign_count)
    if not verdict.ok:
        logger.warning(
            "Passkey %s counter went from %s to %s; possible cloned authenticator",
            passkey.id, passkey.sign_count, verified.new_sign_count,
        )
        raise PasskeyVerificationError(401, "Passkey signature counter regression", passkey.user_id)

    passkey.sign_count = verdict.new_count
    passkey.backup_state = bool(verified.credential_backed_up)
    passkey.last_used_at = utcnow()
    db.add(passkey); db.commit()

    user = db.query(User).filter(User.id == passkey.user_id).first()
    if not user:
        raise PasskeyVerificationError(404, "Account not found", passkey.user_id)
    return user, bool(record.get("remember"))
