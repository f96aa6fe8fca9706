"""Generation service - authorize, generate, debit"""
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ideaverse.core.config import settings
from ideaverse.core.errors import (
    EntitlementPersistError, GenerationInProgressError, IdeaGenerationError, NoCreditsError
)
from ideaverse.core.metrics import generation_attempts_counter
from ideaverse.core.otel import get_tracer
from ideaverse.db.redis import acquire_lock, generation_lock_key, release_lock
from ideaverse.models.generated_idea import GeneratedIdea
from ideaverse.schemas.generations import DEFAULT_PROMPT, GameIdea
from ideaverse.services.entitlement_engine import can_generate
from ideaverse.services.entitlement_service import (
    commit_generation, describe_record, get_or_create_entitlement, load_record
)
from ideaverse.services.idea_generator import HttpIdeaGenerator

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

IdeaGenerator = Callable[[str], GameIdea]


def idea_to_dict(row: GeneratedIdea) -> Dict[str, Any]:
    return {
        "id": row.id,
        "title": row.title,
        "description": row.description,
        "category": row.category,
        "genre": row.genre,
        "viability": row.viability,
        "originality": row.originality,
        "market_appeal": row.market_appeal,
        "prompt": row.prompt,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def generate_idea(
    user_id: int,
    prompt: Optional[str],
    db: Session,
    generator: Optional[IdeaGenerator] = None
) -> Dict[str, Any]:
    """Generate one idea and charge one generation for it.

    Nothing is charged unless an idea came back, and no idea is returned
    unless the charge was recorded.

    Returns:
        Dict with the stored 'idea' and the confirmed 'entitlement' status

    Raises:
        GenerationInProgressError: another generation for this user is running
        NoCreditsError: quota exhausted
        IdeaGenerationError: generator failed, nothing consumed
        EntitlementPersistError: debit not recorded, idea withheld
    """
    generator = generator or HttpIdeaGenerator()
    prompt = (prompt or "").strip() or DEFAULT_PROMPT
    lock_key = generation_lock_key(user_id)

    lock_token = acquire_lock(lock_key, timeout=settings.GENERATION_LOCK_TIMEOUT)
    if lock_token is None:
        generation_attempts_counter.labels(outcome="in_progress").inc()
        logger.info(f"Generation already in progress for user {user_id}")
        raise GenerationInProgressError()

    try:
        get_or_create_entitlement(user_id, db)
        if not can_generate(load_record(user_id, db)):
            generation_attempts_counter.labels(outcome="denied").inc()
            logger.info(f"Generation denied for user {user_id}: no generations remaining")
            raise NoCreditsError()

        with tracer.start_as_current_span("generate_idea.call_generator"):
            try:
                idea = generator(prompt)
            except IdeaGenerationError:
                generation_attempts_counter.labels(outcome="generator_failed").inc()
                raise
            except Exception as e:
                generation_attempts_counter.labels(outcome="generator_failed").inc()
                logger.error(f"Idea generator raised for user {user_id}: {e}", exc_info=True)
                raise IdeaGenerationError("Idea generation failed") from e

        try:
            record, idea_row = commit_generation(user_id, idea, prompt, db)
        except NoCreditsError:
            # Spent by a concurrent request between the check and the debit
            generation_attempts_counter.labels(outcome="denied").inc()
            raise
        except EntitlementPersistError:
            generation_attempts_counter.labels(outcome="persist_failed").inc()
            raise

        generation_attempts_counter.labels(outcome="success").inc()
        return {"idea": idea_to_dict(idea_row), "entitlement": describe_record(record)}
    finally:
        release_lock(lock_key, lock_token)


def list_generation_history(user_id: int, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    rows = (
        db.query(GeneratedIdea)
        .filter(GeneratedIdea.user_id == user_id)
        .order_by(GeneratedIdea.created_at.desc(), GeneratedIdea.id.desc())
        .limit(limit)
        .all()
    )
    return [idea_to_dict(row) for row in rows]
