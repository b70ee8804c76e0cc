# mindtrack/routers/users.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas, security
from ..database import get_db

router = APIRouter(
    tags=["Users"],
    dependencies=[Depends(security.require_admin)],
    responses={404: {"description": "Not found"}},
)


@router.post("/users", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def create_new_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    return crud.create_user(db, user, actor=current_admin, context=context)


@router.get("/users", response_model=List[schemas.UserResponse])
def read_all_users(
    skip: int = 0,
    limit: int = 100,
    role: Optional[models.UserRole] = None,
    include_deleted: bool = False,
    db: Session = Depends(get_db),
):
    return crud.get_users(db, skip=skip, limit=limit, role=role, include_deleted=include_deleted)


@router.get("/users/{user_id}", response_model=schemas.UserResponse)
def read_user(user_id: str, db: Session = Depends(get_db)):
    db_user = crud.get_user(db, user_id)
    if not db_user:
        raise HTTPException(status_code=404, detail="User not found")
    return db_user


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_existing_user(
    user_id: str,
    db: Session = Depends(get_db),
    current_admin: models.User = Depends(security.require_admin),
    context: schemas.AuditContext = Depends(security.get_audit_context),
):
    """
    Soft delete. Appointments keep their clinician and show up in the orphan report.
    """
    db_user = crud.get_user(db, user_id)
    if db_user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if db_user.id == current_admin.id:
        raise HTTPException(status_code=403, detail="Administrators cannot delete their own account.")
    crud.delete_user(db, user_id, actor=current_admin, context=context)
