import csv
import io
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient
from jose import jwt

import finepay.dependencies
import finepay.devtools
from conftest import TestingSessionLocal, checkout_session_event, event_messages, minutes_ago, status_of, stripe_webhook
from finepay.config import get_jwt_secret
from finepay.dependencies import get_http_client, get_payment_config
from finepay.enums import PaymentStatus
from finepay.handlers.echo import calculate_signature
from finepay.main import app as fastapi_app
from finepay.models import User


@pytest.fixture
def api_config():
    return {
        "default": {
            "enabled": True,
            "handler": "test",
            "url": "http://testserver/devtools/payment",
            "secret": "secret",
            "currency": "EUR",
            "exactBalanceRequired": False,
            "errorEmail": "errors@library.test",
        }
    }


@pytest.fixture
def client(monkeypatch, ils, api_config):
    # Point request-scoped services at the test database
    monkeypatch.setattr(finepay.dependencies, "SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        # Gateway and notify calls loop back into the app
        fastapi_app.dependency_overrides[get_payment_config] = lambda: api_config
        fastapi_app.dependency_overrides[get_http_client] = lambda: c
        fastapi_app.dependency_overrides[finepay.devtools.get_notify_client] = lambda: c
        yield c
    fastapi_app.dependency_overrides.clear()


def bearer(claims):
    return {"Authorization": f"Bearer {jwt.encode(claims, get_jwt_secret(), algorithm='HS256')}"}


@pytest.fixture
def auth(user):
    return bearer({"sub": str(user.id)})


@pytest.fixture
def admin_auth():
    return bearer({"sub": "operator", "role": "admin"})


def start(client, auth, **payload):
    return client.post("/payments/start", json=payload, headers=auth, follow_redirects=False)


def local_id_of(url):
    return parse_qs(urlsplit(url).query)["local_payment_id"][0]


def test_full_payment_through_echo_service(client, auth, store, ils):
    response = start(client, auth)
    assert response.status_code == 302
    payment_page = response.headers["location"]
    assert payment_page.startswith("http://testserver/devtools/payment/handle?requestId=")

    page = client.get(payment_page)
    assert page.status_code == 200
    assert 'value="success"' in page.text

    response = client.post(payment_page, data={"status": "success"}, follow_redirects=False)
    assert response.status_code == 302
    return_url = response.headers["location"]
    local_identifier = local_id_of(return_url)

    # Notify already registered the payment
    payment = store.get_payment_by_local_identifier(local_identifier)
    assert payment.get_status() == PaymentStatus.COMPLETED
    assert payment.amount == 1500
    assert len(ils.registered) == 1

    response = client.get(return_url)
    assert response.status_code == 200
    assert response.json() == {
        "local_identifier": local_identifier,
        "result": "SUCCESS",
        "status": "COMPLETED",
        "message": "Payment successful",
        "registered": True,
    }
    assert len(ils.registered) == 1


def test_canceled_payment_through_echo_service(client, auth, store, ils, audit):
    payment_page = start(client, auth).headers["location"]

    response = client.post(payment_page, data={"status": "cancel"}, follow_redirects=False)
    response = client.get(response.headers["location"])

    assert response.status_code == 200
    body = response.json()
    assert body["result"] == "CANCEL"
    assert body["status"] == "CANCELED"
    assert body["registered"] is False
    assert ils.registered == []
    payment = store.get_payment_by_local_identifier(body["local_identifier"])
    assert event_messages(audit, payment).count("Payment marked as canceled") == 1


def test_notify_only_outcome(client, auth, store):
    payment_page = start(client, auth).headers["location"]

    response = client.post(payment_page, data={"status": "notify"})

    assert response.status_code == 200
    assert response.text == "Notify done"
    [payment] = store.get_payment_page().items
    assert payment.get_status() == PaymentStatus.COMPLETED


def test_start_selected_fines(client, auth, store):
    start(client, auth, selected_fine_ids=["demo2"])

    [payment] = store.get_payment_page().items
    assert payment.amount == 500
    assert store.get_fine_ids_for_payment(payment) == ["demo2"]


def test_start_requires_valid_token(client):
    response = start(client, {"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


def test_start_when_online_payment_disabled(client, auth, api_config):
    api_config["default"]["enabled"] = False

    response = start(client, auth)

    assert response.status_code == 400
    assert response.json()["detail"] == "Online payment not enabled"


def test_start_while_payment_awaits_registration(client, auth, make_payment):
    make_payment(status=PaymentStatus.PAID, paid=minutes_ago(1))

    response = start(client, auth)

    assert response.status_code == 409


def test_start_rejects_changed_fines(client, auth, api_config):
    api_config["default"]["exactBalanceRequired"] = True

    response = start(client, auth, expected_amount=1200)

    assert response.status_code == 409
    assert response.json()["detail"] == "Payment::error_fines_changed"


def test_start_below_minimum_fee(client, auth, api_config):
    api_config["default"]["minimumFee"] = 5000

    response = start(client, auth)

    assert response.status_code == 400
    assert response.json()["detail"] == "Payment::minimum_payment"


def test_start_gateway_failure(client, auth, api_config, store):
    api_config["default"]["url"] = "http://testserver/nowhere"

    response = start(client, auth)

    assert response.status_code == 502
    assert response.json()["detail"] == "Payment::error_payment_request_failed"
    assert store.get_payment_page().total == 0


def test_notify_requires_identifier(client):
    assert client.get("/payments/notify").status_code == 400
    assert client.get("/payments/notify?local_payment_id=missing").status_code == 400


def test_notify_with_bad_signature_fails(client, make_payment, store, audit):
    payment = make_payment()

    response = client.post(
        "/payments/notify",
        data={"local_payment_id": payment.local_identifier, "signature": "forged"},
    )

    assert response.status_code == 500
    assert status_of(store, payment) == PaymentStatus.IN_PROGRESS
    assert event_messages(audit, payment)[-1] == "Exception processing request"


def test_notify_form_body_is_accepted(client, auth, store):
    payment_page = start(client, auth).headers["location"]
    request_id = parse_qs(urlsplit(payment_page).query)["requestId"][0]
    [payment] = store.get_payment_page().items
    finepay.devtools._put_session(
        request_id, {"returnUrl": "", "notifyUrl": "", "status": "success"}
    )
    params = {"local_payment_id": payment.local_identifier}
    params["signature"] = calculate_signature(params, "secret")

    response = client.post("/payments/notify", data=params)

    assert response.status_code == 200
    assert status_of(store, payment) == PaymentStatus.COMPLETED


@pytest.fixture
def stripe_source(api_config):
    api_config["stripe"] = {
        "enabled": True,
        "handler": "stripe",
        "apiKey": "sk_test_123",
        "webhookSecret": "whsec_123",
        "currency": "EUR",
        "exactBalanceRequired": False,
    }
    return api_config["stripe"]


def test_stripe_webhook_is_matched_by_client_reference(client, stripe_source, make_payment, store, ils, audit, mocker):
    payment = make_payment(source="stripe")
    retrieve = mocker.patch(
        "stripe.checkout.Session.retrieve",
        return_value=mocker.Mock(client_reference_id=payment.local_identifier, status="complete", payment_status="paid"),
    )
    body, headers = stripe_webhook(checkout_session_event(payment.local_identifier), "whsec_123")

    response = client.post("/payments/notify", content=body, headers=headers)

    assert response.status_code == 200
    retrieve.assert_called_once_with(payment.remote_identifier, api_key="sk_test_123")
    assert status_of(store, payment) == PaymentStatus.COMPLETED
    assert len(ils.registered) == 1
    assert event_messages(audit, payment)[:2] == ["Handler called", "Payment marked as paid"]


def test_stripe_webhook_with_bad_signature_is_rejected(client, stripe_source, make_payment, store, mocker):
    payment = make_payment(source="stripe")
    retrieve = mocker.patch("stripe.checkout.Session.retrieve")
    body, headers = stripe_webhook(checkout_session_event(payment.local_identifier), "whsec_forged")

    response = client.post("/payments/notify", content=body, headers=headers)

    assert response.status_code == 400
    retrieve.assert_not_called()
    assert status_of(store, payment) == PaymentStatus.IN_PROGRESS


def test_return_for_unknown_payment(client):
    assert client.get("/payments/return").status_code == 400
    assert client.get("/payments/return?local_payment_id=missing").status_code == 400


def test_register_endpoint(client, store, ils, make_payment):
    paid = make_payment(status=PaymentStatus.PAID, paid=minutes_ago(1))
    in_progress = make_payment()

    assert client.post(f"/payments/register?localIdentifier={paid.local_identifier}").status_code == 200
    assert status_of(store, paid) == PaymentStatus.COMPLETED
    # Already registered
    assert client.post(f"/payments/register?localIdentifier={paid.local_identifier}").status_code == 200
    assert len(ils.registered) == 1

    assert client.post(f"/payments/register?localIdentifier={in_progress.local_identifier}").status_code == 500
    assert client.post("/payments/register?localIdentifier=missing").status_code == 400
    assert client.post("/payments/register").status_code == 400


def test_register_endpoint_reports_failure(client, store, ils, make_payment):
    payment = make_payment(status=PaymentStatus.PAID, paid=minutes_ago(1))
    ils.patron_available = False

    response = client.post("/payments/register", data={"localIdentifier": payment.local_identifier})

    assert response.status_code == 500
    assert status_of(store, payment) == PaymentStatus.REGISTRATION_FAILED


def test_payment_status_is_owner_only(client, auth, make_payment):
    payment = make_payment(status=PaymentStatus.COMPLETED)

    response = client.get(f"/payments/status?local_payment_id={payment.local_identifier}", headers=auth)
    assert response.status_code == 200
    assert response.json()["status"] == "COMPLETED"
    assert response.json()["status_label"] == "Completed"

    db = TestingSessionLocal()
    other_user = User(username="patron2", cat_username="othercard")
    db.add(other_user)
    db.commit()
    db.close()
    other = bearer({"sub": str(other_user.id)})
    response = client.get(f"/payments/status?local_payment_id={payment.local_identifier}", headers=other)
    assert response.status_code == 404

    response = client.get(f"/payments/status?local_payment_id={payment.local_identifier}", headers=bearer({"sub": "999"}))
    assert response.status_code == 401


def test_payment_overview(client, auth, make_payment):
    make_payment(status=PaymentStatus.COMPLETED, paid=minutes_ago(30))
    abandoned = make_payment(created=minutes_ago(60))

    response = client.get("/payments/overview", headers=auth)

    assert response.status_code == 200
    body = response.json()
    assert body["enabled"] is True
    assert body["last_paid"]["status"] == "COMPLETED"
    assert body["paid_in_progress"] is None
    assert body["started"]["local_identifier"] == abandoned.local_identifier
    assert body["receipt_available"] is False


def test_receipt_of_last_paid_payment(client, auth, api_config, make_payment):
    api_config["default"]["receipt"] = True
    api_config["default"]["businessId"] = "1234567-8"
    make_payment(status=PaymentStatus.COMPLETED, paid=minutes_ago(90))
    latest = make_payment(status=PaymentStatus.COMPLETED, paid=minutes_ago(5))

    assert client.get("/payments/overview", headers=auth).json()["receipt_available"] is True
    response = client.get("/payments/receipt", headers=auth)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert response.headers["content-disposition"].startswith('inline; filename="Payment breakdown - ')
    assert latest.local_identifier in response.text
    assert "1234567-8" in response.text
    assert "15.00 EUR" in response.text


def test_receipt_requires_receipts_enabled_and_a_paid_payment(client, auth, api_config, make_payment):
    api_config["default"]["receipt"] = True
    make_payment()
    assert client.get("/payments/receipt", headers=auth).status_code == 404

    make_payment(status=PaymentStatus.COMPLETED, paid=minutes_ago(5))
    api_config["default"]["receipt"] = False
    assert client.get("/payments/receipt", headers=auth).status_code == 404


def test_admin_requires_admin_role(client, auth):
    assert client.get("/admin/payments", headers=auth).status_code == 403
    assert client.get("/admin/payments", headers={"Authorization": "Bearer x"}).status_code == 401


def test_admin_list_and_filters(client, admin_auth, make_payment):
    make_payment(source="main")
    completed = make_payment(status=PaymentStatus.COMPLETED, source="branch")

    response = client.get("/admin/payments", headers=admin_auth)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert body["sources"] == ["branch", "main"]

    response = client.get(f"/admin/payments?status={int(PaymentStatus.COMPLETED)}", headers=admin_auth)
    assert [p["id"] for p in response.json()["items"]] == [completed.id]

    assert client.get("/admin/payments?status=99", headers=admin_auth).status_code == 400


def test_admin_export_csv(client, admin_auth, make_payment):
    payment = make_payment(status=PaymentStatus.REGISTRATION_EXPIRED)

    response = client.get("/admin/payments/export", headers=admin_auth)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert len(rows) == 1
    assert rows[0]["local_identifier"] == payment.local_identifier
    assert rows[0]["status"] == "ILS Registration Expired"
    assert rows[0]["paid"] == ""


def test_admin_payment_details(client, admin_auth, make_payment):
    payment = make_payment()
    client.get(f"/payments/notify?local_payment_id={payment.local_identifier}&signature=forged")

    response = client.get(f"/admin/payments/{payment.id}", headers=admin_auth)

    assert response.status_code == 200
    body = response.json()
    assert body["payment"]["local_identifier"] == payment.local_identifier
    assert [fee["fine_id"] for fee in body["fees"]] == ["demo1", "demo2"]
    assert [e["message"] for e in body["events"]] == ["Handler called", "Exception processing request"]
    assert client.get("/admin/payments/999", headers=admin_auth).status_code == 404


def test_admin_resolve(client, admin_auth, store, make_payment):
    expired = make_payment(status=PaymentStatus.REGISTRATION_EXPIRED)
    completed = make_payment(status=PaymentStatus.COMPLETED)

    response = client.post(f"/admin/payments/{expired.id}/resolve", headers=admin_auth)
    assert response.status_code == 200
    assert response.json()["status"] == "REGISTRATION_RESOLVED"

    assert client.post(f"/admin/payments/{completed.id}/resolve", headers=admin_auth).status_code == 409
    assert client.post("/admin/payments/999/resolve", headers=admin_auth).status_code == 404


def test_devtools_rejects_unsigned_requests(client):
    response = client.post("/devtools/payment/init", data={"returnUrl": "x", "notifyUrl": "y"})

    assert response.status_code == 400
    assert response.json() == {"data": {"error": "Bad signature"}}
    assert client.get("/devtools/payment/handle?requestId=nope").status_code == 400
