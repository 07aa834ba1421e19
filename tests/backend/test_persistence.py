from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient
from webhook_payloads import CONTACT_ID, ad_referral, message_payload, text_message

from backend.app.main import create_app
from backend.app.models import ContactRecord, ConversionType
from backend.app.persistence import SqlitePersistence
from backend.app.services.attribution import AttributionEngine
from backend.app.store import InMemoryStore


def _new_client(monkeypatch, db_path: Path, conversions) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    app = create_app()
    app.state.attribution = AttributionEngine(client=conversions)
    return TestClient(app)


def test_contacts_and_flags_persist_across_restart(app_env, monkeypatch, tmp_path, conversions) -> None:
    db_path = tmp_path / "wa_crm.sqlite3"
    first_client = _new_client(monkeypatch, db_path, conversions)
    first_client.post(
        "/webhook",
        json=message_payload(text_message(message_id="wamid.P1", referral=ad_referral())),
    )
    assert conversions.names() == ["ViewContent", "Lead"]

    restarted_client = _new_client(monkeypatch, db_path, conversions)
    contact = restarted_client.get(f"/api/contacts/{CONTACT_ID}").json()
    assert contact["viewContentSent"] is True
    assert contact["leadEventSent"] is True
    assert contact["adReferral"]["sourceId"] == "120208000000000"
    assert len(restarted_client.get("/api/conversions").json()) == 2

    redelivered = restarted_client.post(
        "/webhook",
        json=message_payload(text_message(message_id="wamid.P1", referral=ad_referral())),
    )
    assert redelivered.status_code == 200
    assert restarted_client.get(f"/api/contacts/{CONTACT_ID}").json()["unreadCount"] == 1
    assert conversions.calls == 2


def test_conversion_ledger_is_written_to_its_own_table(tmp_path) -> None:
    db_path = tmp_path / "ledger.sqlite3"
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    store = InMemoryStore(persistence=persistence)
    store.record_inbound_message(contact_id=CONTACT_ID, name="Ana", text="hola", summary="hola")
    assert store.claim_conversion(CONTACT_ID, ConversionType.lead)
    store.complete_conversion(
        contact_id=CONTACT_ID,
        conversion_type=ConversionType.lead,
        event_id=f"lead_{CONTACT_ID}_1760870000",
        event_time=1760870000,
    )

    records = persistence.list_conversion_dispatches()
    assert [record.event_id for record in records] == [f"lead_{CONTACT_ID}_1760870000"]
    assert records[0].event_name == ConversionType.lead
    assert isinstance(store.get_contact(CONTACT_ID), ContactRecord)


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "wa_crm.sqlite3"
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()
