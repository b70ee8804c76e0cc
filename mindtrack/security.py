# mindtrack/security.py
"""Request identity for the API boundary.

Authentication happens upstream; the gateway forwards the authenticated user's
id in ``X-User-Id``. Here it is only resolved to a live User row and turned
into the audit context and the history-query context the core expects.
"""
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from . import models, schemas
from .database import get_db
from .errors import ReferenceNotFound
from .references import resolve_user

security_logger = logging.getLogger("security")


def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not identify the acting user",
        headers={"WWW-Authenticate": "X-User-Id"},
    )
    if not x_user_id:
        security_logger.warning(f"Missing X-User-Id for path: {request.url.path}")
        raise credentials_exception
    try:
        user = resolve_user(db, x_user_id)
    except ReferenceNotFound:
        security_logger.warning(f"Unknown or deleted user '{x_user_id}' for path: {request.url.path}")
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


def get_audit_context(request: Request, x_session_id: Optional[str] = Header(None)) -> schemas.AuditContext:
    return schemas.AuditContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=x_session_id,
    )


def get_query_context(current_user: models.User = Depends(get_current_user)) -> schemas.AuditQueryContext:
    return schemas.AuditQueryContext(user_id=current_user.id, role=current_user.role)


def require_role(*allowed_roles: str):
    """Dependency factory for role-based access control"""
    def role_dependency(current_user: models.User = Depends(get_current_user)) -> models.User:
        if current_user.role.value not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(allowed_roles)}"
            )
        return current_user

    return role_dependency


# Specific role dependencies
require_admin = require_role("admin")
require_clinical = require_role("admin", "clinical")
