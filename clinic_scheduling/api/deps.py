from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.locks import get_lock_manager
from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, TokenPayload
)
from ..services.notifications import get_notification_sender
from ..services.reschedule_service import RescheduleService
from ..services.session_service import SessionService

async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify the caller's JWT from the Authorization header."""
    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    if not token_payload.sub or not token_payload.role:
        raise AuthenticationError("Invalid token payload")

    # Everything in scheduling is scoped to one clinic
    if token_payload.clinic_id is None:
        raise AuthorizationError("Your account is not linked to a clinic")

    return token_payload

async def get_staff_actor(
    actor: TokenPayload = Depends(get_current_actor)
) -> TokenPayload:
    """Require any clinic staff role."""
    if not actor.is_staff:
        raise AuthorizationError("Access denied. Staff role required")
    return actor

async def get_scheduler_actor(
    actor: TokenPayload = Depends(get_current_actor)
) -> TokenPayload:
    """Require a role that can create and move sessions."""
    if not actor.is_scheduler:
        raise AuthorizationError("Access denied. Scheduling role required")
    return actor

def get_session_service(
    db: Session = Depends(get_db),
    locks = Depends(get_lock_manager),
    notifier = Depends(get_notification_sender),
) -> SessionService:
    """Dependency injection for SessionService"""
    return SessionService(db, locks=locks, notifier=notifier)

def get_reschedule_service(
    db: Session = Depends(get_db),
    locks = Depends(get_lock_manager),
    notifier = Depends(get_notification_sender),
) -> RescheduleService:
    """Dependency injection for RescheduleService"""
    return RescheduleService(db, locks=locks, notifier=notifier)
