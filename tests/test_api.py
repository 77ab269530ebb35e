"""
HTTP API tests (FastAPI TestClient)
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

from notevault.api.app import create_app, status_for
from notevault.crypto_core.commitments import compute_commitment, generate_secret
from notevault.crypto_core.sealing import seal
from notevault.errors import (
    BackupImportError,
    InvalidTransition,
    ProofError,
    StorageError,
    SubmissionError,
    ValidationError,
)


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


def _deposit(client, amount_minor=1_000_000, **extra):
    r = client.post("/deposit", json={"amount_minor": amount_minor, **extra})
    assert r.status_code == 200, r.text
    return r.json()["note"]


class TestNotes:
    def test_empty(self, client):
        r = client.get("/balance")
        assert r.status_code == 200
        assert r.json() == {
            "status": "ok",
            "total_balance": "0",
            "total_balance_minor": "0",
            "available_notes": 0,
            "last_sync_block": 0,
        }
        assert client.get("/notes").json()["notes"] == []

    def test_deposit_and_list(self, client):
        note = _deposit(client)
        assert note["status"] == "confirmed"
        assert note["amountMinorUnits"] == "1000000"
        assert "secret" not in note

        notes = client.get("/notes").json()
        assert [n["id"] for n in notes["notes"]] == [note["id"]]
        assert notes["total_balance_minor"] == "1000000"
        assert client.get("/balance").json()["available_notes"] == 1

    def test_deposit_display_amount(self, client):
        r = client.post("/deposit", json={"amount": "0.5"})
        assert r.status_code == 200
        assert r.json()["note"]["amountMinorUnits"] == str(5 * 10 ** 17)
        assert r.json()["note"]["amount"] == "0.5"

    def test_unconfirmed_deposit_confirmed_by_event(self, client):
        """With wait=false the deposit event, not the receipt, confirms the note."""
        r = client.post("/deposit", json={"amount_minor": 10, "wait": False})
        assert r.status_code == 200
        assert r.json()["note"]["status"] == "pending"
        for _ in range(100):
            if client.get("/balance").json()["available_notes"] == 1:
                break
            time.sleep(0.01)
        available = client.get("/notes/available").json()
        assert [n["status"] for n in available["notes"]] == ["confirmed"]
        assert client.get("/balance").json()["last_sync_block"] == 1

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"amount": "1", "amount_minor": 1},
            {"amount_minor": 0},
            {"amount": "-1"},
            {"amount": "abc"},
        ],
    )
    def test_deposit_validation(self, client, body):
        assert client.post("/deposit", json=body).status_code == 422

    def test_deposit_too_precise(self, client):
        r = client.post("/deposit", json={"amount": "0.0000000000000000001"})
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"


class TestWithdraw:
    def test_round_trip(self, client, recipient):
        note = _deposit(client)
        r = client.post("/withdraw", json={"amount_minor": 1_000_000, "recipient": recipient})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["noteId"] == note["id"]
        assert body["nullifier"].startswith("0x")

        assert client.get("/balance").json()["total_balance_minor"] == "0"
        session = client.get("/withdraw/session").json()["session"]
        assert session["stage"] == "complete"

    def test_amount_over_note(self, client, recipient):
        note = _deposit(client, 100)
        r = client.post("/withdraw", json={"amount_minor": 101, "recipient": recipient, "note_id": note["id"]})
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"
        assert client.get("/withdraw/session").json()["session"] is None

    def test_unknown_note(self, client, recipient):
        r = client.post("/withdraw", json={"amount_minor": 1, "recipient": recipient, "note_id": "nope"})
        assert r.status_code == 404

    def test_bad_recipient(self, client):
        _deposit(client)
        r = client.post("/withdraw", json={"amount_minor": 1, "recipient": "0x1234"})
        assert r.status_code == 422

    def test_submission_failure(self, client, recipient):
        _deposit(client)
        client.app.state.services["chain"].fail_next_withdrawal("node down")
        r = client.post("/withdraw", json={"amount_minor": 10, "recipient": recipient})
        assert r.status_code == 502
        assert "node down" in r.json()["detail"]
        assert client.get("/balance").json()["total_balance_minor"] == "1000000"
        assert client.get("/withdraw/session").json()["session"]["stage"] == "error"

    def test_cancel_without_session(self, client):
        assert client.post("/withdraw/cancel").json() == {"status": "ok", "cancelled": False}


class TestBackupRoutes:
    def test_export_import(self, client, recipient):
        note = _deposit(client)
        exported = client.get("/backup/export").json()
        assert exported["deposits"][0]["secret"].startswith("0x")

        client.post("/withdraw", json={"amount_minor": 1_000_000, "recipient": recipient})
        r = client.post("/backup/import", json={"backup": exported})
        assert r.status_code == 200
        assert r.json() == {
            "status": "ok",
            "notes": 1,
            "added": 0,
            "updated": 0,
            "total_balance_minor": "0",
        }
        notes = client.get("/notes").json()["notes"]
        assert notes[0]["id"] == note["id"] and notes[0]["status"] == "spent"

    def test_import_malformed(self, client):
        _deposit(client)
        r = client.post("/backup/import", json={"backup": {"deposits": "nope"}})
        assert r.status_code == 400
        assert r.json()["error"] == "BackupImportError"
        assert client.get("/balance").json()["total_balance_minor"] == "1000000"

    def test_import_sealed(self, client):
        _deposit(client)
        record = client.get("/backup/export").json()
        sealed = seal(json.dumps(record).encode(), "pw", n=2 ** 10)
        _deposit(client, 5)

        assert client.post("/backup/import", json={"backup": sealed}).status_code == 400
        assert client.post("/backup/import", json={"backup": sealed, "passphrase": "bad"}).status_code == 400
        r = client.post("/backup/import", json={"backup": sealed, "passphrase": "pw"})
        assert r.status_code == 200
        assert (r.json()["notes"], r.json()["added"]) == (2, 0)
        assert r.json()["total_balance_minor"] == "1000005"


class TestSecretBackupRoutes:
    def test_export_secret(self, client):
        note = _deposit(client)
        r = client.get(f"/notes/{note['id']}/secret-backup")
        assert r.status_code == 200
        blob = r.json()
        assert blob["commitment"] == note["commitment"]
        assert blob["amountMinorUnits"] == "1000000"
        assert blob["secret"].startswith("0x")

    def test_export_unknown(self, client):
        assert client.get("/notes/nope/secret-backup").status_code == 404

    def test_restore(self, client):
        secret = generate_secret()
        r = client.post("/notes/restore", json={"backup": {"secret": secret, "amount": "40", "leafIndex": 3}})
        assert r.status_code == 200, r.text
        note = r.json()["note"]
        assert note["status"] == "confirmed" and note["leafIndex"] == 3
        assert note["commitment"] == compute_commitment(secret, 40)
        assert "secret" not in note
        assert client.get("/balance").json()["total_balance_minor"] == "40"

    def test_restore_duplicate(self, client):
        note = _deposit(client)
        blob = client.get(f"/notes/{note['id']}/secret-backup").json()
        r = client.post("/notes/restore", json={"backup": blob})
        assert r.status_code == 400
        assert r.json()["error"] == "BackupImportError"
        assert len(client.get("/notes").json()["notes"]) == 1

    def test_restore_bad_blob(self, client):
        r = client.post("/notes/restore", json={"backup": {"secret": "0x12", "amount": "5"}})
        assert r.status_code == 400
        assert client.get("/notes").json()["notes"] == []


class TestHistory:
    def test_history_and_metrics(self, client, recipient):
        _deposit(client)
        client.post("/withdraw", json={"amount_minor": 1_000_000, "recipient": recipient})

        events = client.get("/history").json()["events"]
        assert [e["kind"] for e in events] == ["NoteSpent", "NoteConfirmed", "NoteDeposited"]
        assert len(client.get("/history", params={"limit": 1}).json()["events"]) == 1
        assert len(client.get("/history", params={"kind": "NoteSpent"}).json()["events"]) == 1
        assert client.get("/history", params={"limit": 0}).status_code == 422

        rows = client.get("/metrics").json()
        assert sum(r["deposit_count"] for r in rows) == 1
        assert sum(r["spent_count"] for r in rows) == 1


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["checks"]["storage"]["status"] == "healthy"
        assert body["checks"]["rpc"]["status"] == "not_configured"

    def test_ready(self, client):
        assert client.get("/health/ready").json() == {"status": "ready"}


class TestStatusMapping:
    @pytest.mark.parametrize(
        "exc,code",
        [
            (ValidationError("x"), 400),
            (BackupImportError("x"), 400),
            (InvalidTransition("n", "spent", "spent"), 409),
            (ProofError("x", "proving"), 422),
            (SubmissionError("x"), 502),
            (StorageError("x"), 500),
        ],
    )
    def test_status_for(self, exc, code):
        assert status_for(exc) == code
