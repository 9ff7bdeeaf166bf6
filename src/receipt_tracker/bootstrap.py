from __future__ import annotations

from receipt_tracker.core.config import settings
from receipt_tracker.core.db import SessionLocal, engine
from receipt_tracker.core.logging import get_logger, log_event
from receipt_tracker.core.models import Base
from receipt_tracker.modules.identity.service import ensure_admin

logger = get_logger(__name__)


def bootstrap() -> None:
    import receipt_tracker.models  # noqa: F401

    if settings.environment in {"dev", "test"} and settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(engine)

    if not settings.init_admin_email or not settings.init_admin_password:
        return

    # Support comma-separated list of admin emails
    admin_emails = [e.strip() for e in settings.init_admin_email.split(",") if e.strip()]
    with SessionLocal() as session:
        for email in admin_emails:
            ensure_admin(session, email=email, password=settings.init_admin_password)
    log_event(logger, "bootstrap.admins.ensured", admin_count=len(admin_emails))
