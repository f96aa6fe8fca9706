"""Auth service - email/password accounts and Redis-backed sessions"""
import logging
import secrets
from typing import Optional

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ideaverse.core.metrics import login_attempts_counter
from ideaverse.db.redis import delete_session, get_session, set_session
from ideaverse.models.user import User
from ideaverse.services.entitlement_service import get_or_create_entitlement, get_entitlement_status

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    if not password_hash or not password:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.email == email.lower()).first()


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def create_session(user_id: int) -> str:
    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user_id)
    return session_id


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def register_user(email: str, password: str, db: Session, display_name: Optional[str] = None) -> dict:
    """Create an account, its entitlement record and a session

    Raises:
        ValueError: password too short or email already registered
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    if get_user_by_email(email, db):
        raise ValueError("Email already registered")

    user = User(email=email.lower(), password_hash=hash_password(password), display_name=display_name)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("Email already registered")
    db.refresh(user)

    get_or_create_entitlement(user.id, db)
    session_id = create_session(user.id)
    logger.info(f"User registered: {user.email} (ID: {user.id})")

    return {"user": _user_dict(user), "session_id": session_id}


def login_user(email: str, password: str, db: Session) -> dict:
    """Authenticate, make sure the entitlement record exists, create a session

    Raises:
        ValueError: invalid credentials
    """
    user = get_user_by_email(email, db)
    if not user or not verify_password(password, user.password_hash):
        login_attempts_counter.labels(status="failure").inc()
        raise ValueError("Invalid email or password")

    get_or_create_entitlement(user.id, db)
    session_id = create_session(user.id)
    login_attempts_counter.labels(status="success").inc()
    logger.info(f"User logged in: {user.email} (ID: {user.id})")

    return {"user": _user_dict(user), "session_id": session_id}


def logout_user(session_id: Optional[str]) -> dict:
    if session_id:
        delete_session(session_id)
        logger.info(f"User logged out (session: {session_id[:16]}...)")
    return {"message": "Logged out successfully"}


def get_current_user_from_session(session_id: Optional[str], db: Session) -> dict:
    """User info plus confirmed entitlement status, or {"user": None}"""
    if not session_id:
        return {"user": None}

    user_id = get_session(session_id)
    if not user_id:
        return {"user": None}

    user = get_user_by_id(user_id, db)
    if not user:
        return {"user": None}

    return {"user": _user_dict(user), "entitlement": get_entitlement_status(user.id, db)}
