#estate_contracts/core/auth_deps.py
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from estate_contracts.core.security import decode_token
from estate_contracts.models.enums import PrincipalRole

bearer = HTTPBearer(auto_error=True)


@dataclass(frozen=True)
class Principal:
    party_id: str
    role: PrincipalRole

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN


def get_current_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Principal:
    """
    Resolves the caller from the bearer JWT.

    The token must carry party_id and a known role; whether that party may
    act on a given contract is decided by the lifecycle engine.
    """
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")

    party_id = payload.get("party_id") or payload.get("sub")
    role = payload.get("role") or PrincipalRole.USER.value
    if not party_id:
        raise HTTPException(status_code=401, detail="Token missing required claims.")

    try:
        role_enum = PrincipalRole(role)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid role in token.")

    principal = Principal(party_id=str(party_id), role=role_enum)
    request.state.principal = principal
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required.")
    return principal
