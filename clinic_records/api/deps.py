"""Request-scoped dependencies: services from app state and the bearer principal."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..domain.account import Role
from ..domain.contracts import ClientContext
from ..domain.patients import PatientService
from ..domain.payments import PaymentService
from ..domain.records import MedicalRecordService
from ..domain.service import AccountService
from ..notifications import Notifier
from ..security.tokens import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(slots=True, frozen=True)
class Principal:
    """Caller identity decoded from the session token."""

    account_id: str
    email: str
    role: Role


def get_account_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    return request.app.state.account_service


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def get_record_service(request: Request) -> MedicalRecordService:
    return request.app.state.record_service


def get_patient_service(request: Request) -> PatientService:
    return request.app.state.patient_service


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_client_context(request: Request) -> ClientContext:
    """Build the audit context from the peer address and the optional location header."""
    ip_address = request.client.host if request.client else None
    return ClientContext(ip_address=ip_address, location=request.headers.get("X-Client-Location"))


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="authentication token is missing",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = decode_access_token(credentials.credentials)
        return Principal(account_id=claims["sub"], email=claims.get("email", ""), role=Role(claims["role"]))
    except (jwt.PyJWTError, KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_roles(*roles: Role) -> Callable[..., Principal]:
    """Return a dependency admitting only principals holding one of ``roles``."""

    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient role")
        return principal

    return dependency
