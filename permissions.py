import structlog
from sqlalchemy.orm import Session

import crud
import models
import schemas
from settings import Settings

logger = structlog.get_logger(__name__)


def can_create_question(db: Session, user: models.User, settings: Settings) -> bool:
    """Whether ``user``'s plan allows generating another practice question.

    Pro users are unlimited. Free users get ``settings.free_question_limit``
    questions in total across all of their job infos.
    """
    if not settings.auth_billing_enabled:
        return True

    if user.plan == schemas.Plan.pro.value:
        return True

    used = crud.count_questions_for_user(db, user_id=user.id)
    if used < settings.free_question_limit:
        return True

    logger.info(
        "Question limit reached",
        user_id=user.id,
        plan=user.plan,
        used=used,
        limit=settings.free_question_limit,
    )
    return False
