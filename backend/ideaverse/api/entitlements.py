"""Entitlements API routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ideaverse.core.security import require_auth
from ideaverse.db.session import get_db
from ideaverse.services.entitlement_service import get_entitlement_status

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("")
def get_entitlements(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Confirmed entitlement record and quota for the current user"""
    return get_entitlement_status(user_id, db)
