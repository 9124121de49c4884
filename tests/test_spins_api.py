import json
import logging

import pytest
from sqlalchemy.exc import OperationalError

from extensions import db, get_client_ip
from models_spins import EmailClaim


def _claim(client, email="a@example.com", **extra):
    return client.post("/api/claim-spin", json={"email": email, **extra})


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["tldsLoaded"] is True
    assert data["tldsCount"] == 7
    assert data["ledgerMode"] == "email"
    assert resp.headers["Cache-Control"] == "no-store"


def test_claim_unlocks_a_spin(app, client):
    resp = _claim(client, "  A@Example.com ")
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "message": "OK - 1 spin unlocked", "spinsBanked": 1}

    with app.app_context():
        rows = EmailClaim.query.all()
        assert [r.email for r in rows] == ["a@example.com"]


def test_double_submit_is_debounced(client):
    assert _claim(client).status_code == 200
    resp = _claim(client)
    assert resp.status_code == 429
    assert resp.get_json()["error"] == "RETRY_LATER"


def test_reused_email_is_a_conflict(app_factory):
    client = app_factory(CLAIM_DEBOUNCE_SECONDS=0).test_client()
    assert _claim(client).status_code == 200
    resp = _claim(client, "A@EXAMPLE.COM")
    assert resp.status_code == 409
    data = resp.get_json()
    assert data["error"] == "EMAIL_USED"
    assert data["spinsBanked"] == 1


def test_invalid_email(client):
    resp = _claim(client, "john..doe@example.com")
    assert resp.status_code == 400
    data = resp.get_json()
    assert data["ok"] is False
    assert data["error"] == "INVALID_EMAIL"
    assert data["reason"] == "double_dot"
    assert data["message"]


def test_unknown_tld(client):
    resp = _claim(client, "test@email.zz")
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "tld_invalid"


def test_missing_email(client):
    resp = client.post("/api/claim-spin", json={})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_EMAIL"


def test_body_must_be_json_object(client):
    resp = client.post("/api/claim-spin", data="not json", content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "BAD_REQUEST"

    resp = client.post("/api/claim-spin", json=["a@example.com"])
    assert resp.status_code == 400


def test_claims_blocked_without_tld_list(app_factory):
    client = app_factory(TLDS=[]).test_client()
    resp = _claim(client)
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "TLD_UNAVAILABLE"
    assert client.get("/api/health").get_json()["tldsLoaded"] is False


def test_claims_blocked_when_tld_file_missing(app_factory, tmp_path):
    client = app_factory(TLDS=None, TLDS_PATH=str(tmp_path / "missing.json")).test_client()
    assert _claim(client).status_code == 503


def test_tld_list_from_file(app_factory, tmp_path):
    path = tmp_path / "tlds.json"
    path.write_text(json.dumps(["com"]), encoding="utf-8")
    client = app_factory(TLDS=None, TLDS_PATH=str(path)).test_client()
    assert _claim(client).status_code == 200
    assert _claim(client, "a@example.de").status_code == 400


def test_spin_requires_a_claim(client):
    resp = client.post("/api/spin", json={"email": "a@example.com"})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "NO_SPIN_BANKED"


def test_spin_requires_an_identity(client):
    assert client.post("/api/spin", json={}).status_code == 400
    assert client.post("/api/spin", json={"email": "a@example.com", "rotation": "x"}).status_code == 400
    assert client.post("/api/spin", json={"email": "a@example.com", "rotation": "nan"}).status_code == 400
    assert client.post("/api/spin", json={"email": "a@example.com", "rotation": 1e300}).status_code == 400


@pytest.mark.parametrize("rotation", ["nan", "inf", "-inf", 1e300, -2e6])
def test_bad_rotation_keeps_the_banked_spin(client, rotation):
    _claim(client)
    resp = client.post("/api/spin", json={"email": "a@example.com", "rotation": rotation})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "BAD_REQUEST"

    state = client.get("/api/spin/state", query_string={"email": "a@example.com"}).get_json()
    assert state["spinsBanked"] == 1
    assert client.post("/api/spin", json={"email": "a@example.com", "rotation": 3.0}).status_code == 200


def test_claim_then_spin_once(app, client):
    _claim(client)
    resp = client.post("/api/spin", json={"email": "a@example.com", "rotation": 1.5})
    assert resp.status_code == 200
    data = resp.get_json()

    prizes = app.extensions["spinwheel"].prizes
    assert data["prize"] == prizes[data["winnerIndex"]].to_dict()
    assert data["startRotation"] == 1.5
    assert data["finalRotation"] > data["startRotation"]
    assert 4.2 <= data["duration"] <= 5.0
    assert data["spinsBanked"] == 0
    assert data["recentWins"][0]["label"] == data["prize"]["label"]

    again = client.post("/api/spin", json={"email": "a@example.com"})
    assert again.status_code == 409


def test_state_after_claim(client):
    _claim(client)
    resp = client.get("/api/spin/state", query_string={"email": "A@example.com"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["ok"] is True
    assert data["spinsBanked"] == 1
    assert data["claimedToday"] is True
    assert data["nextClaimAt"]
    assert data["recentWins"] == []
    assert [p["label"] for p in data["prizes"]][:2] == ["80% off", "3% off"]


def test_state_of_new_email(client):
    data = client.get("/api/spin/state", query_string={"email": "b@example.com"}).get_json()
    assert data["spinsBanked"] == 0
    assert data["claimedToday"] is False
    assert data["nextClaimAt"] is None


def test_state_requires_an_identity(client):
    assert client.get("/api/spin/state").status_code == 400


def test_daily_mode_keys_by_device(app_factory):
    client = app_factory(LEDGER_MODE="daily", CLAIM_DEBOUNCE_SECONDS=0).test_client()
    assert _claim(client, deviceId="dev-1").status_code == 200

    resp = _claim(client, "b@example.com", deviceId="dev-1")
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "ALREADY_CLAIMED"

    assert _claim(client, deviceId="dev-2").status_code == 200

    state = client.get("/api/spin/state", query_string={"deviceId": "dev-1"}).get_json()
    assert state["claimedToday"] is True
    assert state["nextClaimAt"]

    spun = client.post("/api/spin", json={"deviceId": "dev-1"})
    assert spun.status_code == 200
    assert spun.get_json()["spinsBanked"] == 0


def test_daily_mode_double_submit(app_factory):
    client = app_factory(LEDGER_MODE="daily").test_client()
    assert _claim(client, deviceId="dev-1").status_code == 200
    assert _claim(client, deviceId="dev-1").status_code == 429


def test_file_claim_log(app_factory, tmp_path):
    client = app_factory(CLAIM_BACKEND="file", CLAIM_DEBOUNCE_SECONDS=0).test_client()
    assert _claim(client, "First@Example.com").status_code == 200
    assert _claim(client, "first@example.com").status_code == 409
    assert (tmp_path / "emails.txt").read_text(encoding="utf-8") == "first@example.com\n"


def test_json_ledger_storage(app_factory, tmp_path):
    client = app_factory(LEDGER_STORAGE="json").test_client()
    assert _claim(client).status_code == 200
    on_disk = json.loads((tmp_path / "spin_state.json").read_text(encoding="utf-8"))
    assert on_disk["spin_state_v1:a@example.com"]["spinsBanked"] == 1


def test_unknown_route_is_json(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["ok"] is False


def test_client_ip_prefers_forwarded_address(app):
    with app.test_request_context(
        "/", headers={"X-Forwarded-For": "203.0.113.7"}, environ_base={"REMOTE_ADDR": "10.0.0.1"}
    ):
        assert get_client_ip() == "203.0.113.7"
    with app.test_request_context("/", environ_base={"REMOTE_ADDR": "10.0.0.1"}):
        assert get_client_ip() == "10.0.0.1"


def test_claim_log_failure_is_logged_with_traceback(app_factory, monkeypatch, caplog):
    client = app_factory(LEDGER_STORAGE="memory").test_client()

    def fail():
        raise OperationalError("INSERT INTO email_claims", {}, Exception("database is locked"))

    monkeypatch.setattr(db.session, "commit", fail)
    with caplog.at_level(logging.ERROR, logger="spins"):
        resp = _claim(client)

    assert resp.status_code == 200
    assert resp.get_json()["spinsBanked"] == 1
    record = next(r for r in caplog.records if "not written to the claim log" in r.getMessage())
    assert record.exc_info is not None
