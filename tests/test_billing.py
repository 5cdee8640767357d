import json
from typing import Optional

import pytest
import stripe
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from unittest.mock import MagicMock, patch

import crud
from main import app, get_current_user, get_settings
from settings import Settings

# Mock settings for Stripe configuration
MOCK_SETTINGS = Settings(
    stripe_secret_key="sk_test_123",
    stripe_price_id_pro="price_pro_123",
    stripe_webhook_secret="whsec_test_123",
    app_base_url="http://testserver",
    cognito_user_pool_id=None,
    cognito_app_client_id=None,
    cognito_domain=None,
    openrouter_api_key=None,
)

SIGNATURE_HEADERS = {"Stripe-Signature": "t=123,v1=dummy_signature"}


@pytest.fixture
def billing_settings(test_client):
    app.dependency_overrides[get_settings] = lambda: MOCK_SETTINGS
    return MOCK_SETTINGS


# Helper to create a mock Stripe event
def create_mock_stripe_event(
    event_type: str,
    user_id: Optional[int] = None,
    customer: str = "cus_test_123",
) -> dict:
    return {
        "id": "evt_test_webhook",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_123",
                "object": "checkout.session",
                "customer": customer,
                "metadata": {"user_id": str(user_id)} if user_id else {},
            }
        },
    }


def post_event(test_client: TestClient, event: dict):
    with patch("main.stripe.Webhook.construct_event", return_value=event):
        return test_client.post(
            "/billing/webhook", content=json.dumps(event).encode("utf-8"), headers=SIGNATURE_HEADERS
        )


def test_create_checkout_session(test_client: TestClient, billing_settings, make_user):
    """Checkout opens a Pro subscription tied to the user."""
    user = make_user()
    expected_checkout_url = "https://checkout.stripe.com/pay/cs_test_123"
    app.dependency_overrides[get_current_user] = lambda: user

    # Called from a worker thread, so a plain MagicMock
    with patch("main.stripe.checkout.Session.create") as mock_stripe_create:
        mock_session = MagicMock()
        mock_session.url = expected_checkout_url
        mock_stripe_create.return_value = mock_session

        response = test_client.post("/billing/checkout-session")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"url": expected_checkout_url}

    mock_stripe_create.assert_called_once()
    call_kwargs = mock_stripe_create.call_args.kwargs
    assert call_kwargs["line_items"][0]["price"] == billing_settings.stripe_price_id_pro
    assert call_kwargs["mode"] == "subscription"
    assert call_kwargs["metadata"]["user_id"] == str(user.id)
    assert call_kwargs["success_url"].startswith(billing_settings.app_base_url)
    assert call_kwargs["cancel_url"].startswith(billing_settings.app_base_url)


def test_create_checkout_session_without_stripe_config(test_client: TestClient, make_user):
    app.dependency_overrides[get_current_user] = lambda: make_user()
    app.dependency_overrides[get_settings] = lambda: Settings(stripe_secret_key=None)

    response = test_client.post("/billing/checkout-session")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR


def test_stripe_webhook_upgrades_user(
    test_client: TestClient, billing_settings, db_session: Session, make_user
):
    user = make_user(plan="free")

    response = post_event(test_client, create_mock_stripe_event("checkout.session.completed", user.id))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "success"}
    db_session.refresh(user)
    assert user.plan == "pro"
    assert user.stripe_customer_id == "cus_test_123"


def test_stripe_webhook_invalid_signature(test_client: TestClient, billing_settings):
    event = create_mock_stripe_event("checkout.session.completed", 999)

    with patch("main.stripe.Webhook.construct_event") as mock_construct_event:
        mock_construct_event.side_effect = stripe.SignatureVerificationError("Invalid signature", "sig_header")
        response = test_client.post(
            "/billing/webhook", content=json.dumps(event).encode("utf-8"), headers=SIGNATURE_HEADERS
        )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "Invalid signature" in response.json()["detail"]


def test_stripe_webhook_missing_user_id(test_client: TestClient, billing_settings):
    response = post_event(test_client, create_mock_stripe_event("checkout.session.completed"))

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "error"
    assert "Missing user_id" in response.json()["detail"]


def test_stripe_webhook_user_not_found(test_client: TestClient, billing_settings, db_session: Session):
    non_existent_user_id = 99999

    response = post_event(
        test_client, create_mock_stripe_event("checkout.session.completed", non_existent_user_id)
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "success"}
    assert crud.get_user_by_id(db_session, non_existent_user_id) is None


def test_stripe_webhook_subscription_deleted_downgrades_user(
    test_client: TestClient, billing_settings, db_session: Session, make_user
):
    user = make_user(plan="pro")
    user.stripe_customer_id = "cus_cancel_456"
    db_session.commit()

    response = post_event(
        test_client,
        create_mock_stripe_event("customer.subscription.deleted", customer="cus_cancel_456"),
    )

    assert response.status_code == status.HTTP_200_OK
    db_session.refresh(user)
    assert user.plan == "free"


def test_stripe_webhook_unhandled_event(test_client: TestClient, billing_settings):
    response = post_event(test_client, create_mock_stripe_event("payment_intent.succeeded"))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "success"}
