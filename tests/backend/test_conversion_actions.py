from __future__ import annotations

import hashlib

from webhook_payloads import CONTACT_ID, ad_referral, message_payload, text_message

from backend.app.services.attribution import AttributionEngine


def _ad_contact(client) -> None:
    client.post(
        "/webhook",
        json=message_payload(text_message(referral=ad_referral()), name="Ana Lopez"),
    )


def _organic_contact(client) -> None:
    client.post("/webhook", json=message_payload(text_message(), name="Ana"))


def test_purchase_is_sent_once_with_value_and_currency(client, conversions) -> None:
    _ad_contact(client)
    conversions.events.clear()

    response = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": "199.99"})
    assert response.status_code == 200
    assert response.json()["success"] is True

    assert conversions.names() == ["Purchase"]
    event = conversions.events[0]
    assert event["custom_data"]["value"] == 199.99
    assert event["custom_data"]["currency"] == "MXN"
    assert event["custom_data"]["lead_source"] == "whatsapp_ad"
    assert event["user_data"]["ctwa_clid"] == "ARAkLkA8rmlFeiCktEJQ"

    contact = client.get(f"/api/contacts/{CONTACT_ID}").json()
    assert contact["purchaseStatus"] == "completed"
    assert contact["purchaseValue"] == 199.99
    assert contact["purchaseCurrency"] == "MXN"

    again = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": 50})
    assert again.status_code == 400
    assert again.json()["success"] is False
    assert conversions.names() == ["Purchase"]
    assert client.get(f"/api/contacts/{CONTACT_ID}").json()["purchaseValue"] == 199.99


def test_invalid_purchase_values_are_rejected(client, conversions) -> None:
    _organic_contact(client)
    for value in ("abc", 0, -5, "", None, "nan", True, False, [10], {"amount": 10}):
        response = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": value})
        assert response.status_code == 400, value
    assert conversions.calls == 0
    assert client.get(f"/api/contacts/{CONTACT_ID}").json()["purchaseStatus"] is None


def test_registration_hashes_and_stores_email(client, conversions) -> None:
    _organic_contact(client)
    response = client.post(
        f"/api/contacts/{CONTACT_ID}/mark-as-registration",
        json={"email": " Ana@Example.com "},
    )
    assert response.status_code == 200

    event = conversions.events[0]
    assert event["event_name"] == "CompleteRegistration"
    assert event["action_source"] == "chat"
    assert event["custom_data"] == {"lead_source": "whatsapp_organic"}
    expected = hashlib.sha256(b"ana@example.com").hexdigest()
    assert event["user_data"]["em"] == [expected]

    contact = client.get(f"/api/contacts/{CONTACT_ID}").json()
    assert contact["registrationStatus"] == "completed"
    assert contact["email"] == "Ana@Example.com"


def test_registration_without_body_and_with_bad_email(client, conversions) -> None:
    _organic_contact(client)
    bad = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-registration", json={"email": "nope"})
    assert bad.status_code == 400
    assert conversions.calls == 0

    response = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-registration")
    assert response.status_code == 200
    assert "em" not in conversions.events[0]["user_data"]


def test_view_content_is_idempotent(client, conversions) -> None:
    _organic_contact(client)
    first = client.post(f"/api/contacts/{CONTACT_ID}/send-view-content")
    second = client.post(f"/api/contacts/{CONTACT_ID}/send-view-content")
    assert first.status_code == 200
    assert second.status_code == 400
    assert conversions.names() == ["ViewContent"]


def test_ad_contact_view_content_was_already_sent_on_first_message(client, conversions) -> None:
    _ad_contact(client)
    response = client.post(f"/api/contacts/{CONTACT_ID}/send-view-content")
    assert response.status_code == 400
    assert conversions.names() == ["ViewContent", "Lead"]


def test_unknown_contact_is_not_found(client, conversions) -> None:
    for path, body in (
        ("mark-as-purchase", {"value": 10}),
        ("mark-as-registration", {}),
        ("send-view-content", None),
    ):
        response = client.post(f"/api/contacts/5210000000009/{path}", json=body)
        assert response.status_code == 404, path
    assert conversions.calls == 0


def test_dispatch_failure_leaves_conversion_retryable(client, conversions) -> None:
    _organic_contact(client)
    conversions.fail = True
    failed = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": 120})
    assert failed.status_code == 502
    contact = client.get(f"/api/contacts/{CONTACT_ID}").json()
    assert contact["purchaseStatus"] is None
    assert contact["purchaseValue"] is None

    conversions.fail = False
    retried = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": 120})
    assert retried.status_code == 200
    assert client.get(f"/api/contacts/{CONTACT_ID}").json()["purchaseStatus"] == "completed"


def test_unconfigured_tracking_changes_nothing(client, conversions) -> None:
    _organic_contact(client)
    client.app.state.attribution = AttributionEngine(client=None)

    response = client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": 10})
    assert response.status_code == 503
    assert client.get(f"/api/contacts/{CONTACT_ID}").json()["purchaseStatus"] is None
    assert conversions.calls == 0


def test_dispatch_ledger_lists_sent_events(client) -> None:
    _ad_contact(client)
    client.post(f"/api/contacts/{CONTACT_ID}/mark-as-purchase", json={"value": 10})

    records = client.get("/api/conversions", params={"contact_id": CONTACT_ID}).json()
    assert sorted(record["eventName"] for record in records) == ["Lead", "Purchase", "ViewContent"]
    assert all(record["eventId"].endswith(str(record["eventTime"])) for record in records)
    assert client.get("/api/conversions", params={"contact_id": "other"}).json() == []


def test_conversion_metrics_are_exported(client) -> None:
    _organic_contact(client)
    client.post(f"/api/contacts/{CONTACT_ID}/send-view-content")
    client.post(f"/api/contacts/{CONTACT_ID}/send-view-content")

    body = client.get("/metrics").text
    assert 'wa_crm_conversions_total{event="ViewContent",outcome="sent"} 1' in body
    assert 'wa_crm_conversions_total{event="ViewContent",outcome="already_processed"} 1' in body
