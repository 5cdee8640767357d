import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import (
    FastAPI,
    Depends,
    Form,
    HTTPException,
    Request,
    Header,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import stripe
import structlog

import models
import schemas
import crud
import logic
from auth import get_current_user, get_optional_user
from cache_tags import CacheTagRegistry
from database import create_db_and_tables, get_db
from formatters import format_date_time, format_experience_level, format_question_difficulty
from observability import init_observability
from permissions import can_create_question
from request_id_middleware import RequestIdMiddleware
from settings import get_settings, Settings

BASE_DIR = Path(__file__).resolve().parent

# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)

# Create DB tables on startup
create_db_and_tables()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    app.state.cache_registry.clear()
    logger.info("Cache registry cleared on shutdown")


app = FastAPI(
    title="Interview Prep",
    description="Practice interview questions with AI feedback, scoped to your job infos",
    version="0.1.0",
    lifespan=lifespan,
)

# One tag cache per process, shared by every request
_settings = get_settings()
app.state.cache_registry = CacheTagRegistry(
    max_entries=_settings.cache_max_entries,
    enabled=_settings.cache_enabled,
)

# --- CORS Middleware ---
origins = [
    "http://localhost",
    "http://localhost:8000",
    "http://127.0.0.1",
    "http://127.0.0.1:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)

# Mount static files directory
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")

# Templates directory
templates = Jinja2Templates(directory=BASE_DIR / "templates")
templates.env.filters["date_time"] = format_date_time
templates.env.filters["experience_level"] = format_experience_level
templates.env.filters["difficulty"] = format_question_difficulty


def get_cache_registry(request: Request) -> CacheTagRegistry:
    return request.app.state.cache_registry


# --- Error handlers --- #
@app.exception_handler(crud.QuestionNotFoundError)
async def question_not_found_handler(request: Request, exc: crud.QuestionNotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Question not found"})


@app.exception_handler(crud.JobInfoNotFoundError)
async def job_info_not_found_handler(request: Request, exc: crud.JobInfoNotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Job info not found"})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error", error=str(exc), exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Database unavailable"},
    )


# --- Page helpers --- #
def _sign_in_redirect(request: Request, settings: Settings) -> RedirectResponse:
    query = urlencode({"redirect_url": request.url.path})
    return RedirectResponse(url=f"{settings.sign_in_url}?{query}", status_code=status.HTTP_303_SEE_OTHER)


def _not_found_page(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request, "not_found.html", {}, status_code=status.HTTP_404_NOT_FOUND
    )


def _new_question_href(job_info_id: str, can_create: bool) -> str:
    if can_create:
        return f"/app/job-infos/{job_info_id}/questions/new"
    return "/app/upgrade"


# --- Root Endpoint --- #
@app.get("/", include_in_schema=False)
async def read_root():
    return RedirectResponse(url="/app/job-infos")


# Add route for favicon.ico
@app.get("/favicon.ico", include_in_schema=False)
async def favicon():
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Pages --- #
@app.get("/app/job-infos", response_class=HTMLResponse, tags=["Pages"])
def job_infos_page(
    request: Request,
    current_user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    if current_user is None:
        return _sign_in_redirect(request, settings)

    job_infos = crud.get_job_infos(db, cache, current_user.id)
    return templates.TemplateResponse(
        request,
        "job_infos.html",
        {
            "job_infos": job_infos,
            "experience_levels": list(schemas.ExperienceLevel),
        },
    )


@app.post("/app/job-infos", tags=["Pages"])
def create_job_info_form(
    name: str = Form(...),
    experience_level: schemas.ExperienceLevel = Form(...),
    title: Optional[str] = Form(None),
    description: str = Form(""),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
):
    ref = crud.insert_job_info(
        db,
        cache,
        current_user.id,
        schemas.JobInfoCreate(
            name=name,
            title=title or None,
            experience_level=experience_level,
            description=description,
        ),
    )
    return RedirectResponse(
        url=f"/app/job-infos/{ref.id}/questions", status_code=status.HTTP_303_SEE_OTHER
    )


@app.get("/app/job-infos/{job_info_id}/questions", response_class=HTMLResponse, tags=["Pages"])
def questions_page(
    request: Request,
    job_info_id: str,
    current_user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    """Dashboard of completed questions for one job info."""
    if current_user is None:
        return _sign_in_redirect(request, settings)

    job_info = crud.get_job_info(db, cache, job_info_id, current_user.id)
    if job_info is None:
        return _not_found_page(request)

    questions = crud.get_completed_questions(db, cache, job_info_id, current_user.id)
    can_create = can_create_question(db, current_user, settings)

    return templates.TemplateResponse(
        request,
        "questions.html",
        {
            "job_info": job_info,
            "questions": questions,
            "can_create": can_create,
            "new_question_href": _new_question_href(job_info_id, can_create),
        },
    )


@app.get("/app/job-infos/{job_info_id}/questions/new", response_class=HTMLResponse, tags=["Pages"])
def new_question_page(
    request: Request,
    job_info_id: str,
    current_user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    if current_user is None:
        return _sign_in_redirect(request, settings)

    job_info = crud.get_job_info(db, cache, job_info_id, current_user.id)
    if job_info is None:
        return _not_found_page(request)

    if not can_create_question(db, current_user, settings):
        return RedirectResponse(url="/app/upgrade", status_code=status.HTTP_303_SEE_OTHER)

    return templates.TemplateResponse(
        request,
        "question_new.html",
        {"job_info": job_info, "difficulties": list(schemas.QuestionDifficulty)},
    )


@app.post("/app/job-infos/{job_info_id}/questions/new", response_class=HTMLResponse, tags=["Pages"])
async def generate_question_form(
    request: Request,
    job_info_id: str,
    difficulty: schemas.QuestionDifficulty = Form(...),
    current_user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    if current_user is None:
        return _sign_in_redirect(request, settings)

    try:
        question = await logic.create_practice_question(
            db, cache, current_user, job_info_id, difficulty, settings
        )
    except HTTPException as exc:
        if exc.status_code == status.HTTP_403_FORBIDDEN:
            return RedirectResponse(url="/app/upgrade", status_code=status.HTTP_303_SEE_OTHER)
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return _not_found_page(request)
        raise

    return templates.TemplateResponse(
        request,
        "question_answer.html",
        {"job_info_id": job_info_id, "question": question},
    )


@app.post("/app/job-infos/{job_info_id}/questions/{question_id}/answer", tags=["Pages"])
async def answer_question_form(
    request: Request,
    job_info_id: str,
    question_id: str,
    answer: str = Form(..., min_length=1),
    current_user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    if current_user is None:
        return _sign_in_redirect(request, settings)

    try:
        await logic.answer_practice_question(
            db, cache, current_user, question_id, answer, job_info_id=job_info_id
        )
    except HTTPException as exc:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return _not_found_page(request)
        raise

    return RedirectResponse(
        url=f"/app/job-infos/{job_info_id}/questions/{question_id}",
        status_code=status.HTTP_303_SEE_OTHER,
    )


@app.get("/app/job-infos/{job_info_id}/questions/{question_id}", response_class=HTMLResponse, tags=["Pages"])
def question_detail_page(
    request: Request,
    job_info_id: str,
    question_id: str,
    current_user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    """Question, feedback and answer side by side."""
    if current_user is None:
        return _sign_in_redirect(request, settings)

    question = crud.get_question(db, cache, job_info_id, question_id, current_user.id)
    if question is None:
        return _not_found_page(request)

    return templates.TemplateResponse(
        request,
        "question_detail.html",
        {"job_info_id": job_info_id, "question": question},
    )


@app.get("/app/upgrade", response_class=HTMLResponse, tags=["Pages"])
def upgrade_page(
    request: Request,
    current_user: Optional[models.User] = Depends(get_optional_user),
    settings: Settings = Depends(get_settings),
):
    if current_user is None:
        return _sign_in_redirect(request, settings)

    return templates.TemplateResponse(
        request,
        "upgrade.html",
        {
            "plan": current_user.plan,
            "free_question_limit": settings.free_question_limit,
            "billing_enabled": settings.auth_billing_enabled,
        },
    )


# --- Authenticated current user endpoint ---
@app.get("/users/me", response_model=schemas.User, tags=["Auth"])
def get_me(current_user: models.User = Depends(get_current_user)):
    """Returns the authenticated user's database record."""
    return current_user


# --- Job info API ---
@app.post(
    "/api/job-infos",
    response_model=schemas.JobInfoRef,
    status_code=status.HTTP_201_CREATED,
    tags=["Job Infos"],
)
def create_job_info_endpoint(
    job_info: schemas.JobInfoCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
):
    return crud.insert_job_info(db, cache, current_user.id, job_info)


@app.patch("/api/job-infos/{job_info_id}", response_model=schemas.JobInfoRef, tags=["Job Infos"])
def update_job_info_endpoint(
    job_info_id: str,
    job_info: schemas.JobInfoUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
):
    if crud.get_job_info(db, cache, job_info_id, current_user.id) is None:
        raise HTTPException(status_code=404, detail="Job info not found")
    return crud.update_job_info(db, cache, job_info_id, job_info)


# --- Question API ---
@app.get(
    "/api/job-infos/{job_info_id}/questions",
    response_model=List[schemas.QuestionSummary],
    tags=["Questions"],
)
def list_completed_questions_endpoint(
    job_info_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
):
    if crud.get_job_info(db, cache, job_info_id, current_user.id) is None:
        raise HTTPException(status_code=404, detail="Job info not found")
    return list(crud.get_completed_questions(db, cache, job_info_id, current_user.id))


@app.get(
    "/api/job-infos/{job_info_id}/questions/{question_id}",
    response_model=schemas.QuestionDetail,
    tags=["Questions"],
)
def get_question_endpoint(
    job_info_id: str,
    question_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
):
    question = crud.get_question(db, cache, job_info_id, question_id, current_user.id)
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


@app.post(
    "/api/job-infos/{job_info_id}/questions",
    response_model=schemas.PracticeQuestion,
    status_code=status.HTTP_201_CREATED,
    tags=["Questions"],
)
async def generate_question_endpoint(
    job_info_id: str,
    body: schemas.GenerateQuestionInput,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
    settings: Settings = Depends(get_settings),
):
    return await logic.create_practice_question(
        db, cache, current_user, job_info_id, body.difficulty, settings
    )


@app.post("/api/questions/{question_id}/answer", response_model=schemas.QuestionRef, tags=["Questions"])
async def answer_question_endpoint(
    question_id: str,
    body: schemas.AnswerInput,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: CacheTagRegistry = Depends(get_cache_registry),
):
    return await logic.answer_practice_question(db, cache, current_user, question_id, body.answer)


# --- Stripe Checkout Session endpoint
@app.post("/billing/checkout-session", tags=["Billing"])
async def create_checkout_session(
    current_user: models.User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    if not settings.stripe_secret_key or not settings.stripe_price_id_pro:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe configuration missing",
        )

    stripe.api_key = settings.stripe_secret_key

    success_url = f"{settings.app_base_url}/billing/success"
    cancel_url = f"{settings.app_base_url}/billing/cancel"

    logger.info("Creating Stripe checkout session", user_id=current_user.id)
    loop = asyncio.get_running_loop()
    session = await loop.run_in_executor(
        None,
        lambda: stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[{"price": settings.stripe_price_id_pro, "quantity": 1}],
            mode="subscription",
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            client_reference_id=str(current_user.id),
            metadata={"user_id": str(current_user.id)},
            locale="en",
        ),
    )
    logger.info("Stripe checkout session created", session_id=session.id, user_id=current_user.id)
    return {"url": session.url}


@app.get("/billing/success", name="billing_success_page", tags=["Billing"])
async def billing_success_page():
    return RedirectResponse(url="/app/job-infos")


@app.get("/billing/cancel", name="billing_cancel_page", tags=["Billing"])
async def billing_cancel_page():
    return RedirectResponse(url="/app/upgrade")


# --- Stripe Webhook Endpoint --- #
@app.post("/billing/webhook", tags=["Billing"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Stripe webhook rejected", error=str(exc))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid signature: {exc}")

    event_id = event.get("id")
    event_type = event.get("type")
    logger.info("Stripe webhook event received", event_id=event_id, event_type=event_type)

    if event_type == "checkout.session.completed":
        session = event["data"]["object"]
        raw_user_id = (session.get("metadata") or {}).get("user_id")
        if not raw_user_id:
            logger.warning("Stripe webhook without user_id metadata", event_id=event_id)
            return JSONResponse(
                content={"status": "error", "detail": "Missing user_id in session metadata"},
                status_code=200,
            )

        user = crud.set_user_plan(
            db,
            int(raw_user_id),
            schemas.Plan.pro,
            stripe_customer_id=session.get("customer"),
        )
        if user is None:
            logger.warning("Stripe webhook for unknown user", user_id=raw_user_id)

    elif event_type == "customer.subscription.deleted":
        subscription = event["data"]["object"]
        user = crud.get_user_by_stripe_customer_id(db, subscription.get("customer"))
        if user:
            crud.set_user_plan(db, user.id, schemas.Plan.free)
        else:
            logger.warning("Subscription cancelled for unknown customer", customer=subscription.get("customer"))

    else:
        logger.info("Unhandled Stripe event type", event_type=event_type)

    return JSONResponse(content={"status": "success"}, status_code=200)


# --- Main execution --- (for running with uvicorn)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
