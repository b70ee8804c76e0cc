import os
import sys

from sqlalchemy.orm import Session

# Ensure package import when run from the repo root
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mindtrack import crud, models
from mindtrack.compliance_logger import compliance_logger
from mindtrack.database import SessionLocal, create_tables
from mindtrack.storage import unit_of_work


def get_env(name: str, default: str = None, required: bool = False) -> str:
    val = os.getenv(name, default)
    if required and not val:
        raise RuntimeError(f"Missing required env var: {name}")
    return val or ""


def upsert_admin(db: Session) -> models.User:
    email = get_env("ADMIN_DEFAULT_EMAIL", required=True).strip().lower()
    first_name = get_env("ADMIN_DEFAULT_FIRST_NAME", "System")
    last_name = get_env("ADMIN_DEFAULT_LAST_NAME", "Administrator")

    user = crud.get_user_by_email(db, email)
    if user is None:
        user = crud.create_user(db, {
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "role": models.UserRole.admin,
        })
        action = "created"
    else:
        # Bring an existing account back as an active admin
        with unit_of_work(db):
            user.role = models.UserRole.admin
            user.is_active = True
            user.deleted_at = None
            db.flush()
            compliance_logger.record(
                db, None, models.AuditAction.UPDATE, models.ResourceType.user, user.id,
                {"changedFields": ["deleted_at", "is_active", "role"], "seeded": True},
            )
        action = "updated"

    print(f"Admin user {action}: email='{email}', id='{user.id}'")
    return user


def main():
    create_tables()
    db = SessionLocal()
    try:
        upsert_admin(db)
    finally:
        db.close()


if __name__ == "__main__":
    main()
