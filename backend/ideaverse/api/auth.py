"""Auth API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from ideaverse.core.security import set_auth_cookie
from ideaverse.db.session import get_db
from ideaverse.schemas.auth import LoginRequest, RegisterRequest
from ideaverse.services.auth_service import (
    get_current_user_from_session, login_user, logout_user, register_user
)

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/register")
def register(request_data: RegisterRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Create an account and log it in"""
    try:
        result = register_user(request_data.email, request_data.password, db, request_data.display_name)
    except ValueError as e:
        raise HTTPException(400, str(e))
    set_auth_cookie(response, result["session_id"], request)
    return {"user": result["user"]}


@router.post("/login")
def login(request_data: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Login user"""
    try:
        result = login_user(request_data.email, request_data.password, db)
    except ValueError as e:
        raise HTTPException(401, str(e))
    set_auth_cookie(response, result["session_id"], request)
    return {"user": result["user"]}


@router.post("/logout")
def logout(request: Request, response: Response):
    """Logout user"""
    session_id = request.cookies.get("session_id")
    result = logout_user(session_id)
    if session_id:
        response.delete_cookie("session_id")
    return result


@router.get("/me")
def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Get current logged-in user with their entitlement"""
    session_id = request.cookies.get("session_id")
    return get_current_user_from_session(session_id, db)
