from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from receipt_tracker.core.models import utcnow
from receipt_tracker.core.security import hash_password, verify_password
from receipt_tracker.modules.identity.models import User, UserRole


def get_user_by_email(session: Session, *, email: str) -> User | None:
    return session.scalar(select(User).where(User.email == email.strip().lower()))


def create_user(
    session: Session,
    *,
    email: str,
    password: str,
    role: UserRole = UserRole.USER,
    full_name: str | None = None,
) -> User:
    if get_user_by_email(session, email=email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    user = User(
        email=email.strip().lower(),
        full_name=full_name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def authenticate_user(session: Session, *, email: str, password: str) -> User:
    user = get_user_by_email(session, email=email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    user.last_login_at = utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def ensure_admin(session: Session, *, email: str, password: str) -> User:
    """Create the admin account, or promote an existing account to admin."""
    user = get_user_by_email(session, email=email)
    if user is None:
        return create_user(
            session, email=email, password=password, role=UserRole.ADMIN, full_name="Admin"
        )
    if user.role != UserRole.ADMIN:
        user.role = UserRole.ADMIN
        session.add(user)
        session.commit()
        session.refresh(user)
    return user
