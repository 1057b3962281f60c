from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import WorkflowRules, settings
from app.core.security import subject_from_token
from app.db.session import get_session
from app.models.user import User
from app.services.delegation import DelegationResolver, DelegationService
from app.services.events import EventBus
from app.services.workflow import WorkflowEngine

# Tokens come from the external identity provider; tokenUrl only feeds the OpenAPI docs.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=settings.AUTH_TOKEN_URL)


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Annotated[Session, Depends(get_session)],
) -> User:
    """Validate JWT and return the User ORM object."""
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        user_uuid = subject_from_token(token)
    except JWTError:
        raise credentials_exc

    user = db.execute(select(User).where(User.id == user_uuid)).scalar_one_or_none()
    if user is None or not user.is_active:
        raise credentials_exc
    return user


# ─── Workflow services (process-wide; overridden in tests) ───

@lru_cache
def get_workflow_rules() -> WorkflowRules:
    return WorkflowRules.from_settings()


@lru_cache
def get_event_bus() -> EventBus:
    from app.workers.event_tasks import build_event_bus
    return build_event_bus()


def get_workflow_engine(
    rules: Annotated[WorkflowRules, Depends(get_workflow_rules)],
    bus: Annotated[EventBus, Depends(get_event_bus)],
) -> WorkflowEngine:
    return WorkflowEngine(rules=rules, bus=bus)


def get_delegation_service(
    rules: Annotated[WorkflowRules, Depends(get_workflow_rules)],
    bus: Annotated[EventBus, Depends(get_event_bus)],
) -> DelegationService:
    return DelegationService(DelegationResolver(rules), bus=bus)
