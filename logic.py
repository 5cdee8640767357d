import hashlib
import functools
from collections import OrderedDict
from typing import Optional

import fastapi
import structlog
from aws_embedded_metrics import metric_scope
from sqlalchemy.orm import Session

import crud
import models
import schemas
from cache_tags import CacheTagRegistry
from llm_interaction import call_llm_for_feedback, call_llm_for_question
from permissions import can_create_question
from settings import Settings

# Set up logging
logger = structlog.get_logger(__name__)

# LLM response cache to reduce API calls, least recently used entries evicted first
_LLM_CACHE: "OrderedDict[str, object]" = OrderedDict()
_LLM_CACHE_MAX_ENTRIES = 512


def cache_llm_response(func):
    """Decorator to cache LLM responses based on function parameters"""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        # Create a unique key based on function name and all arguments
        args_str = [str(arg) for arg in args]
        kwargs_str = [f"{k}={v}" for k, v in sorted(kwargs.items())]
        all_args = func.__name__ + "|" + "|".join(args_str + kwargs_str)
        cache_key = hashlib.md5(all_args.encode()).hexdigest()

        if cache_key in _LLM_CACHE:
            logger.info(
                f"Using cached LLM response for {func.__name__}, hash {cache_key[:8]}"
            )
            _LLM_CACHE.move_to_end(cache_key)
            return _LLM_CACHE[cache_key]

        result = await func(*args, **kwargs)

        if result is not None:
            _LLM_CACHE[cache_key] = result
            while len(_LLM_CACHE) > _LLM_CACHE_MAX_ENTRIES:
                _LLM_CACHE.popitem(last=False)

        return result

    return wrapper


# Feedback only; question generation is never cached
call_llm_for_feedback_cached = cache_llm_response(call_llm_for_feedback)


@metric_scope
async def create_practice_question(
    db: Session,
    cache: CacheTagRegistry,
    user: models.User,
    job_info_id: str,
    difficulty: schemas.QuestionDifficulty,
    settings: Settings,
    metrics=None,
) -> schemas.PracticeQuestion:
    """Generate a new question for one of ``user``'s job infos and store it.

    Raises 404 when the job info is missing or not owned by ``user`` and 403
    when the user's plan does not allow another question.
    """
    metrics.set_namespace("InterviewPrepQuestions")
    metrics.set_property("user_id", user.id)

    job_info = crud.get_job_info(db, cache, job_info_id, user.id)
    if job_info is None:
        raise fastapi.HTTPException(status_code=404, detail="Job info not found")

    if not can_create_question(db, user, settings):
        metrics.put_metric("question_limit_reached", 1, "Count")
        raise fastapi.HTTPException(
            status_code=403,
            detail="Upgrade your plan to create more questions",
        )

    previous = crud.get_question_texts_for_job_info(db, job_info_id)
    generated = await call_llm_for_question(
        job_description=job_info.description,
        job_title=job_info.title,
        experience_level=job_info.experience_level.value,
        difficulty=difficulty.value,
        previous_questions=previous,
    )

    ref = crud.insert_question(
        db,
        cache,
        schemas.QuestionCreate(
            job_info_id=job_info_id,
            text=generated.question,
            difficulty=difficulty,
        ),
    )
    metrics.put_metric("questions_generated", 1, "Count")
    logger.info("Practice question created", question_id=ref.id, job_info_id=job_info_id, user_id=user.id)
    return schemas.PracticeQuestion(
        id=ref.id,
        job_info_id=ref.job_info_id,
        text=generated.question,
        difficulty=difficulty,
    )


@metric_scope
async def answer_practice_question(
    db: Session,
    cache: CacheTagRegistry,
    user: models.User,
    question_id: str,
    answer: str,
    job_info_id: Optional[str] = None,
    metrics=None,
) -> schemas.QuestionRef:
    """Grade ``answer`` and store it on the question together with the feedback.

    Only unanswered questions owned by ``user`` (and, when given, belonging to
    ``job_info_id``) can be answered; anything else is a 404.
    """
    metrics.set_namespace("InterviewPrepQuestions")
    metrics.set_property("user_id", user.id)

    question = crud.get_pending_question(db, question_id, user.id, job_info_id=job_info_id)
    if question is None:
        raise fastapi.HTTPException(status_code=404, detail="Question not found")

    job_info = question.job_info
    result: schemas.QuestionFeedback = await call_llm_for_feedback_cached(
        job_description=job_info.description,
        experience_level=job_info.experience_level,
        question_text=question.text,
        answer=answer,
    )

    ref = crud.update_question(
        db,
        cache,
        question.id,
        schemas.QuestionUpdate(
            answer=answer,
            feedback=result.feedback,
            feedback_rating=result.rating,
        ),
    )
    metrics.put_metric("feedback_generated", 1, "Count")
    metrics.put_metric("feedback_rating", result.rating, "None")
    logger.info("Practice question answered", question_id=ref.id, rating=result.rating, user_id=user.id)
    return ref
