from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from jose import jwt
from jose.exceptions import JWTError

from portflow.core.config import Settings
from portflow.core.orchestration import policies
from portflow.core.sessions.store import credential_owner

from .deps import get_settings

AUTH_HEADER = "Authorization"
ROLE_HEADER = "X-Portflow-Role"
JWT_ALGORITHMS = ["HS256"]


@dataclass(frozen=True)
class Caller:
    role: str
    credential: str
    owner: str


def extract_bearer(request: Request) -> str | None:
    header = request.headers.get(AUTH_HEADER, "")
    scheme, _, token = header.partition(" ")
    if scheme.casefold() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_owner(credential: str, role: str, secret: str | None) -> str:
    """Identity that owns the caller's sessions.

    With a shared secret the token is verified and its ``id`` claim is the owner,
    so a re-issued token for the same user keeps access to their sessions.
    """
    if not secret:
        return credential_owner(credential)
    try:
        claims = jwt.decode(credential, secret, algorithms=JWT_ALGORITHMS)
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="invalid bearer credential") from exc
    user_id = claims.get("id") or claims.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="bearer credential has no user id")
    claimed_role = claims.get("role")
    if claimed_role is not None and policies.normalize_role(str(claimed_role)) != role:
        raise HTTPException(status_code=401, detail="role does not match bearer credential")
    return f"user:{user_id}"


def get_caller(request: Request, settings: Settings = Depends(get_settings)) -> Caller:
    credential = extract_bearer(request)
    if not credential:
        raise HTTPException(status_code=401, detail="missing bearer credential")
    role = policies.normalize_role(request.headers.get(ROLE_HEADER, ""))
    if not policies.is_known_role(role):
        raise HTTPException(status_code=401, detail="missing or unknown role")
    return Caller(role=role, credential=credential, owner=resolve_owner(credential, role, settings.jwt_secret))
