from functools import lru_cache
from typing import Optional, Union

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel

from settings import get_settings
from schemas import GeneratedQuestion, QuestionFeedback


logger = structlog.get_logger(__name__)

# --- Application Info for OpenRouter ---
APP_NAME = "Interview Prep"

# --- Model Configuration ---
MODEL_CONFIG = {
    "question_generate": {
        "model": "openai/gpt-4.1-mini",
        "temperature": 0.7,
        "top_p": 1,
        "max_tokens": 2048,
    },
    "question_feedback": {"model": "openai/o4-mini-high", "max_tokens": 8192},
}


@lru_cache
def get_client() -> AsyncOpenAI:
    """OpenAI client pointed at OpenRouter, built on first use."""
    settings = get_settings()
    if not settings.openrouter_api_key:
        logger.error("OPENROUTER_API_KEY not found in environment variables or .env file.")
        raise ValueError(
            "OPENROUTER_API_KEY not found. Ensure it's set in your environment or .env file."
        )
    return AsyncOpenAI(
        base_url="https://openrouter.ai/api/v1",
        api_key=settings.openrouter_api_key,
        default_headers={
            "HTTP-Referer": settings.app_base_url,
            "X-Title": APP_NAME,
        },
    )


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    model_config: dict,
    response_model: Optional[type[BaseModel]] = None,
) -> Union[str, BaseModel]:
    """Call LLM for a specific task."""

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]

    response = await get_client().beta.chat.completions.parse(
        messages=messages,
        response_format=response_model,
        **model_config,
    )
    return response.choices[0].message.parsed


# --- Specific LLM Interaction Functions --- #


async def call_llm_for_question(
    job_description: str,
    job_title: Optional[str],
    experience_level: str,
    difficulty: str,
    previous_questions: list[str],
) -> GeneratedQuestion:
    """Call LLM to write one practice interview question."""

    system_prompt = """You are an experienced technical interviewer helping a candidate practice.
Write exactly ONE interview question tailored to the job described by the user.

Rules:
- Match the requested difficulty: "easy" checks fundamentals, "medium" needs applied reasoning,
  "hard" needs in-depth design or trade-off analysis.
- Match the candidate's experience level.
- Do not repeat or closely paraphrase any of the previous questions.
- The question may include a short scenario, code snippet or constraints, formatted as markdown.
- Do NOT include the answer, hints or evaluation criteria.
"""

    previous = "\n".join(f"- {q}" for q in previous_questions) or "(none)"
    user_prompt = f"""# Job
Title: {job_title or "(not specified)"}
Experience level: {experience_level}

{job_description}

# Requested difficulty
{difficulty}

# Previous questions
{previous}
"""

    response = await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=MODEL_CONFIG["question_generate"],
        response_model=GeneratedQuestion,
    )
    logger.info("Generated practice question", difficulty=difficulty)
    return response


async def call_llm_for_feedback(
    job_description: str,
    experience_level: str,
    question_text: str,
    answer: str,
) -> QuestionFeedback:
    """Call LLM to grade a candidate's answer."""

    system_prompt = """You are an interview coach reviewing a candidate's answer to a practice question.

    RATING (0-10 scale):
    - 9-10: Complete, correct and well-communicated; would clearly pass a real interview
    - 7-8: Mostly correct with minor gaps or unclear explanations
    - 5-6: Partially correct; key ideas present but important gaps
    - 3-4: Significant errors or missing core concepts
    - 0-2: Incorrect, off-topic or empty

    FEEDBACK REQUIREMENTS (markdown):
    - Start with a one-line summary of the overall verdict
    - "Strengths": what the answer did well, citing specifics from the answer
    - "Improvements": concrete gaps and how to address them
    - "Model answer": a concise example of a strong answer at the candidate's experience level
    - Judge the answer against the job's context and the candidate's experience level
    """

    user_prompt = f"""# Job context
Experience level: {experience_level}

{job_description}

# Question
{question_text}

# Candidate's answer
{answer}
"""

    response = await call_llm(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        model_config=MODEL_CONFIG["question_feedback"],
        response_model=QuestionFeedback,
    )
    logger.info("Generated answer feedback", rating=response.rating)
    return response
