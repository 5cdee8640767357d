import uuid
from typing import Optional

import structlog
from sqlalchemy.orm import Session, contains_eager, joinedload

import models
import schemas
from cache_tags import (
    CacheTagRegistry,
    get_job_info_id_tag,
    get_job_info_user_tag,
    get_question_id_tag,
    get_question_job_info_tag,
    revalidate_job_info_cache,
    revalidate_question_cache,
)

logger = structlog.get_logger(__name__)


class QuestionNotFoundError(Exception):
    def __init__(self, question_id: str):
        super().__init__(f"Question {question_id} not found")
        self.question_id = question_id


class JobInfoNotFoundError(Exception):
    def __init__(self, job_info_id: str):
        super().__init__(f"Job info {job_info_id} not found")
        self.job_info_id = job_info_id


# --- User CRUD ---
def get_user_by_id(db: Session, user_id: int):
    """Get a user by their primary key ID."""
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email).first()


def create_user(db: Session, user: schemas.UserCreate):
    db_user = models.User(
        email=user.email,
        cognito_sub=user.cognito_sub or f"local-{uuid.uuid4()}",
        plan=schemas.Plan.free.value,
    )
    db.add(db_user)
    db.flush()  # Assign ID without committing
    db.refresh(db_user)
    return db_user


def set_user_plan(
    db: Session, user_id: int, plan: schemas.Plan, stripe_customer_id: Optional[str] = None
):
    user = get_user_by_id(db, user_id)
    if not user:
        return None
    user.plan = plan.value
    if stripe_customer_id:
        user.stripe_customer_id = stripe_customer_id
    db.commit()
    db.refresh(user)
    logger.info("User plan changed", user_id=user_id, plan=plan.value)
    return user


def get_user_by_stripe_customer_id(db: Session, customer_id: str):
    return (
        db.query(models.User)
        .filter(models.User.stripe_customer_id == customer_id)
        .first()
    )


# --- Job info CRUD ---
def get_job_info(
    db: Session, cache: CacheTagRegistry, job_info_id: str, user_id: int
) -> Optional[schemas.JobInfoSummary]:
    """Cached, owner-scoped job info lookup. Returns None for missing or foreign rows."""

    def load():
        cache.register_dependency(get_job_info_id_tag(job_info_id))
        job_info = (
            db.query(models.JobInfo)
            .filter(models.JobInfo.id == job_info_id, models.JobInfo.user_id == user_id)
            .first()
        )
        if job_info is None:
            return None
        return schemas.JobInfoSummary.model_validate(job_info)

    return cache.cached(("get_job_info", job_info_id, user_id), load)


def get_job_infos(
    db: Session, cache: CacheTagRegistry, user_id: int
) -> tuple[schemas.JobInfoSummary, ...]:
    """Cached list of ``user_id``'s job infos, newest first."""

    def load():
        cache.register_dependency(get_job_info_user_tag(user_id))
        job_infos = (
            db.query(models.JobInfo)
            .filter(models.JobInfo.user_id == user_id)
            .order_by(models.JobInfo.updated_at.desc())
            .all()
        )
        return tuple(schemas.JobInfoSummary.model_validate(job_info) for job_info in job_infos)

    return cache.cached(("get_job_infos", user_id), load)


def insert_job_info(
    db: Session, cache: CacheTagRegistry, user_id: int, job_info: schemas.JobInfoCreate
) -> schemas.JobInfoRef:
    db_job_info = models.JobInfo(user_id=user_id, **job_info.model_dump(mode="json"))
    db.add(db_job_info)
    db.commit()
    db.refresh(db_job_info)

    ref = schemas.JobInfoRef(id=db_job_info.id, user_id=db_job_info.user_id)
    revalidate_job_info_cache(cache, id=ref.id, user_id=ref.user_id)
    logger.info("Job info inserted", job_info_id=ref.id, user_id=ref.user_id)
    return ref


def update_job_info(
    db: Session, cache: CacheTagRegistry, job_info_id: str, job_info: schemas.JobInfoUpdate
) -> schemas.JobInfoRef:
    db_job_info = db.query(models.JobInfo).filter(models.JobInfo.id == job_info_id).first()
    if db_job_info is None:
        raise JobInfoNotFoundError(job_info_id)

    for field, value in job_info.model_dump(mode="json", exclude_unset=True).items():
        setattr(db_job_info, field, value)
    db.commit()
    db.refresh(db_job_info)

    ref = schemas.JobInfoRef(id=db_job_info.id, user_id=db_job_info.user_id)
    revalidate_job_info_cache(cache, id=ref.id, user_id=ref.user_id)
    logger.info("Job info updated", job_info_id=ref.id, user_id=ref.user_id)
    return ref


# --- Question read models ---
def get_question(
    db: Session,
    cache: CacheTagRegistry,
    job_info_id: str,
    question_id: str,
    user_id: int,
) -> Optional[schemas.QuestionDetail]:
    """Fetch a completed question owned by ``user_id``.

    Missing rows, rows owned by someone else and rows without both an answer
    and feedback all come back as None so callers cannot tell them apart.
    """

    def load():
        cache.register_dependency(get_question_id_tag(question_id))
        question = (
            db.query(models.Question)
            .options(joinedload(models.Question.job_info))
            .filter(
                models.Question.id == question_id,
                models.Question.job_info_id == job_info_id,
            )
            .first()
        )
        if question is None:
            return None

        # Registered before the owner check so a job info edit also drops cached misses
        cache.register_dependency(get_job_info_id_tag(question.job_info.id))

        if question.job_info.user_id != user_id:
            return None

        if question.answer is None or question.feedback is None:
            return None

        return schemas.QuestionDetail.model_validate(question)

    return cache.cached(("get_question", job_info_id, question_id, user_id), load)


def get_completed_questions(
    db: Session, cache: CacheTagRegistry, job_info_id: str, user_id: int
) -> tuple[schemas.QuestionSummary, ...]:
    """Completed questions for a job info, most recently updated first."""

    def load():
        cache.register_dependency(get_question_job_info_tag(job_info_id))
        questions = (
            db.query(models.Question)
            .join(models.Question.job_info)
            .options(contains_eager(models.Question.job_info))
            .filter(
                models.Question.job_info_id == job_info_id,
                models.Question.answer.isnot(None),
                models.Question.feedback.isnot(None),
            )
            .order_by(models.Question.updated_at.desc())
            .all()
        )
        return tuple(
            schemas.QuestionSummary.model_validate(question)
            for question in questions
            if question.job_info.user_id == user_id
        )

    return cache.cached(("get_completed_questions", job_info_id, user_id), load)


def get_pending_question(
    db: Session, question_id: str, user_id: int, job_info_id: Optional[str] = None
):
    """Owner-scoped lookup of a question that has not been answered yet (uncached)."""
    query = (
        db.query(models.Question)
        .join(models.Question.job_info)
        .filter(
            models.Question.id == question_id,
            models.JobInfo.user_id == user_id,
            models.Question.answer.is_(None),
        )
    )
    if job_info_id is not None:
        query = query.filter(models.Question.job_info_id == job_info_id)
    return query.first()


def get_question_texts_for_job_info(db: Session, job_info_id: str, limit: int = 20) -> list[str]:
    rows = (
        db.query(models.Question.text)
        .filter(models.Question.job_info_id == job_info_id)
        .order_by(models.Question.created_at.desc())
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


def count_questions_for_user(db: Session, user_id: int) -> int:
    return (
        db.query(models.Question)
        .join(models.Question.job_info)
        .filter(models.JobInfo.user_id == user_id)
        .count()
    )


# --- Question write path ---
def insert_question(
    db: Session, cache: CacheTagRegistry, question: schemas.QuestionCreate
) -> schemas.QuestionRef:
    db_question = models.Question(**question.model_dump(mode="json"))
    db.add(db_question)
    db.commit()
    db.refresh(db_question)

    ref = schemas.QuestionRef(id=db_question.id, job_info_id=db_question.job_info_id)
    revalidate_question_cache(cache, id=ref.id, job_info_id=ref.job_info_id)
    logger.info("Question inserted", question_id=ref.id, job_info_id=ref.job_info_id)
    return ref


def update_question(
    db: Session, cache: CacheTagRegistry, question_id: str, question: schemas.QuestionUpdate
) -> schemas.QuestionRef:
    """Apply a partial update and invalidate the cache for the row's post-update ids.

    Raises QuestionNotFoundError when no row has ``question_id``.
    """
    db_question = db.query(models.Question).filter(models.Question.id == question_id).first()
    if db_question is None:
        logger.warning("Update of missing question", question_id=question_id)
        raise QuestionNotFoundError(question_id)

    for field, value in question.model_dump(mode="json", exclude_unset=True).items():
        setattr(db_question, field, value)
    db.commit()
    db.refresh(db_question)

    ref = schemas.QuestionRef(id=db_question.id, job_info_id=db_question.job_info_id)
    revalidate_question_cache(cache, id=ref.id, job_info_id=ref.job_info_id)
    logger.info("Question updated", question_id=ref.id, job_info_id=ref.job_info_id)
    return ref
