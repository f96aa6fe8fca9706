"""Generations API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ideaverse.core.errors import (
    EntitlementPersistError, GenerationInProgressError, IdeaGenerationError, NoCreditsError
)
from ideaverse.core.security import require_auth
from ideaverse.db.session import get_db
from ideaverse.schemas.generations import GenerateRequest
from ideaverse.services.generation_service import generate_idea, list_generation_history
from ideaverse.services.idea_generator import HttpIdeaGenerator

router = APIRouter(prefix="/api/generations", tags=["generations"])
logger = logging.getLogger(__name__)


def get_idea_generator():
    return HttpIdeaGenerator()


@router.post("")
def create_generation(
    request_data: GenerateRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    generator=Depends(get_idea_generator)
):
    """Generate a game idea, charging one generation"""
    try:
        return generate_idea(user_id, request_data.prompt, db, generator)
    except NoCreditsError as e:
        raise HTTPException(402, str(e))
    except GenerationInProgressError as e:
        raise HTTPException(409, str(e))
    except IdeaGenerationError as e:
        raise HTTPException(502, str(e))
    except EntitlementPersistError as e:
        logger.error(f"Generation for user {user_id} discarded: {e}")
        raise HTTPException(503, "Could not record generation, please try again")


@router.get("/history")
def get_generation_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Ideas generated by the current user, newest first"""
    return {"ideas": list_generation_history(user_id, db, limit)}
