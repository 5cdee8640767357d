from permissions import can_create_question
from settings import Settings

BILLING = Settings(auth_billing_enabled=True, free_question_limit=2)


def test_everyone_can_create_when_billing_disabled(db_session, make_user, make_job_info, make_question):
    user = make_user(plan="free")
    job_info = make_job_info(user)
    for _ in range(3):
        make_question(job_info)

    assert can_create_question(db_session, user, Settings(auth_billing_enabled=False, free_question_limit=2))


def test_pro_plan_is_unlimited(db_session, make_user, make_job_info, make_question):
    user = make_user(plan="pro")
    job_info = make_job_info(user)
    for _ in range(5):
        make_question(job_info)

    assert can_create_question(db_session, user, BILLING)


def test_free_plan_limit_counts_questions_across_job_infos(
    db_session, make_user, make_job_info, make_question
):
    user = make_user(plan="free")
    assert can_create_question(db_session, user, BILLING)

    make_question(make_job_info(user, name="First"))
    assert can_create_question(db_session, user, BILLING)

    make_question(make_job_info(user, name="Second"))
    assert not can_create_question(db_session, user, BILLING)

