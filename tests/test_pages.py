import pytest
from fastapi import status

from auth import get_optional_user
from main import app, get_settings
from settings import Settings

BILLING_SETTINGS = Settings(auth_billing_enabled=True, free_question_limit=1, sign_in_url="/sign-in")


@pytest.fixture
def login(test_client):
    def _login(user):
        app.dependency_overrides[get_optional_user] = lambda: user

    return _login


def test_questions_page_redirects_anonymous_users(test_client):
    app.dependency_overrides[get_optional_user] = lambda: None

    response = test_client.get("/app/job-infos/abc/questions", follow_redirects=False)

    assert response.status_code == status.HTTP_303_SEE_OTHER
    assert response.headers["location"].startswith("/sign-in?redirect_url=")


def test_questions_page_lists_completed_questions(
    test_client, login, make_user, make_job_info, make_question
):
    user = make_user()
    job_info = make_job_info(user, name="Platform Team")
    done = make_question(job_info, text="Design a rate limiter", answer="A", feedback="F", feedback_rating=8)
    pending = make_question(job_info, text="Explain the GIL")
    login(user)

    response = test_client.get(f"/app/job-infos/{job_info.id}/questions")

    assert response.status_code == status.HTTP_200_OK
    assert "Platform Team" in response.text
    assert "Design a rate limiter" in response.text
    assert f"/questions/{done.id}" in response.text
    assert "8/10" in response.text
    assert "Explain the GIL" not in response.text
    assert f"/questions/{pending.id}" not in response.text
    assert f"/app/job-infos/{job_info.id}/questions/new" in response.text


def test_questions_page_empty_state(test_client, login, make_user, make_job_info):
    user = make_user()
    job_info = make_job_info(user)
    login(user)

    response = test_client.get(f"/app/job-infos/{job_info.id}/questions")

    assert response.status_code == status.HTTP_200_OK
    assert "No completed questions yet" in response.text
    assert "Ask your first question" in response.text


def test_questions_page_links_to_upgrade_when_limit_reached(
    test_client, login, make_user, make_job_info, make_question
):
    user = make_user(plan="free")
    job_info = make_job_info(user)
    make_question(job_info)
    login(user)
    app.dependency_overrides[get_settings] = lambda: BILLING_SETTINGS

    response = test_client.get(f"/app/job-infos/{job_info.id}/questions")

    assert response.status_code == status.HTTP_200_OK
    assert "/app/upgrade" in response.text
    assert "Upgrade to continue" in response.text
    assert f"/app/job-infos/{job_info.id}/questions/new" not in response.text


def test_questions_page_for_foreign_job_info_is_not_found(
    test_client, login, make_user, make_job_info
):
    owner = make_user()
    job_info = make_job_info(owner)
    login(make_user())

    response = test_client.get(f"/app/job-infos/{job_info.id}/questions")

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert "Not found" in response.text


def test_question_detail_page_shows_all_panes(
    test_client, login, make_user, make_job_info, make_question
):
    user = make_user()
    job_info = make_job_info(user)
    question = make_question(
        job_info,
        text="How would you shard a table?",
        answer="By tenant id",
        feedback="Consider hot tenants",
        feedback_rating=6,
        difficulty="hard",
    )
    login(user)

    response = test_client.get(f"/app/job-infos/{job_info.id}/questions/{question.id}")

    assert response.status_code == status.HTTP_200_OK
    assert "How would you shard a table?" in response.text
    assert "By tenant id" in response.text
    assert "Consider hot tenants" in response.text
    assert "Hard" in response.text
    assert "6/10" in response.text


def test_question_detail_not_found_cases_look_identical(
    test_client, login, make_user, make_job_info, make_question
):
    owner = make_user()
    job_info = make_job_info(owner)
    foreign = make_question(job_info, answer="A", feedback="F")
    login(make_user())
    foreign_response = test_client.get(f"/app/job-infos/{job_info.id}/questions/{foreign.id}")
    missing_response = test_client.get(f"/app/job-infos/{job_info.id}/questions/does-not-exist")

    login(owner)
    pending = make_question(job_info)
    pending_response = test_client.get(f"/app/job-infos/{job_info.id}/questions/{pending.id}")

    for response in (foreign_response, missing_response, pending_response):
        assert response.status_code == status.HTTP_404_NOT_FOUND
    assert foreign_response.text == missing_response.text == pending_response.text


def test_new_question_page_redirects_to_upgrade_when_limit_reached(
    test_client, login, make_user, make_job_info, make_question
):
    user = make_user(plan="free")
    job_info = make_job_info(user)
    make_question(job_info)
    login(user)
    app.dependency_overrides[get_settings] = lambda: BILLING_SETTINGS

    response = test_client.get(
        f"/app/job-infos/{job_info.id}/questions/new", follow_redirects=False
    )

    assert response.status_code == status.HTTP_303_SEE_OTHER
    assert response.headers["location"] == "/app/upgrade"


def test_job_infos_page_and_form(test_client, login, make_user):
    user = make_user()
    login(user)

    empty = test_client.get("/app/job-infos")
    assert "You have no job infos yet" in empty.text

    created = test_client.post(
        "/app/job-infos",
        data={"name": "ML Engineer", "experience_level": "mid-level", "title": "", "description": "PyTorch"},
        follow_redirects=False,
    )
    assert created.status_code == status.HTTP_303_SEE_OTHER
    assert created.headers["location"].endswith("/questions")

    listing = test_client.get("/app/job-infos")
    assert "ML Engineer" in listing.text
    assert created.headers["location"] in listing.text


def test_upgrade_page_shows_plan(test_client, login, make_user):
    login(make_user(plan="pro"))

    response = test_client.get("/app/upgrade")

    assert response.status_code == status.HTTP_200_OK
    assert "You are on the Pro plan" in response.text


def test_responses_carry_request_id(test_client, login, make_user):
    login(make_user())

    response = test_client.get("/app/upgrade", headers={"X-Request-ID": "abc-123"})

    assert response.headers["X-Request-ID"] == "abc-123"
