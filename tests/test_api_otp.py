import logging

from shiftcare import auth
from shiftcare.config import settings


PHONE = "+15557654321"


def _send(client, phone=PHONE):
    r = client.post("/otp/send", json={"phone": phone})
    assert r.status_code == 200, r.text
    return r.json()


def test_send_then_verify_issues_session(client):
    body = _send(client)
    assert body["success"] is True
    assert body["expires_in"] == settings.OTP_TTL_SECS
    code = body["otp"]
    assert len(code) == settings.OTP_CODE_LENGTH

    r = client.post("/otp/verify", json={"phone": PHONE, "otp": code})
    assert r.status_code == 200, r.text
    session = r.json()
    assert session["success"] is True
    assert session["subject"] == PHONE
    assert session["user"] == {"phone": PHONE}
    assert session["expires_in"] == 7 * 24 * 3600
    claims = auth.decode_access_token(session["token"])
    assert claims["sub"] == PHONE
    assert claims["flow"] == "otp"


def test_verify_normalizes_formatted_phone(client):
    code = _send(client, "(555) 765-4321")["otp"]
    r = client.post("/otp/verify", json={"phone": "+1 555 765 4321", "otp": code})
    assert r.status_code == 200, r.text
    assert r.json()["subject"] == PHONE


def test_code_is_single_use(client):
    code = _send(client)["otp"]
    assert client.post("/otp/verify", json={"phone": PHONE, "otp": code}).status_code == 200
    r = client.post("/otp/verify", json={"phone": PHONE, "otp": code})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "otp_already_used"


def test_wrong_code_keeps_challenge(client):
    code = _send(client)["otp"]
    wrong = "0" * len(code) if code != "0" * len(code) else "1" * len(code)
    r = client.post("/otp/verify", json={"phone": PHONE, "otp": wrong})
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "otp_invalid"
    assert err["details"]["remaining_attempts"] == settings.OTP_MAX_ATTEMPTS - 1
    assert client.post("/otp/verify", json={"phone": PHONE, "otp": code}).status_code == 200


def test_expired_code_is_rejected(app, client, monkeypatch):
    code = _send(client)["otp"]
    store = app.state.otp.flows["otp"].store
    issued = store.lookup(PHONE)
    monkeypatch.setattr(store, "clock", lambda: issued.expires_at + 1)
    r = client.post("/otp/verify", json={"phone": PHONE, "otp": code})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "otp_expired"
    r = client.post("/otp/verify", json={"phone": PHONE, "otp": code})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "otp_not_found"


def test_verify_without_challenge_is_not_found(client):
    r = client.post("/otp/verify", json={"phone": "+15550009999", "otp": "123456"})
    assert r.status_code == 404
    assert r.json() == {
        "success": False,
        "error": {"code": "otp_not_found", "message": "OTP not found. Please request a new one."},
    }


def test_resend_replaces_previous_code(app, client):
    first = _send(client)["otp"]
    second = _send(client)["otp"]
    store = app.state.otp.flows["otp"].store
    assert len(store) == 1
    if first != second:
        r = client.post("/otp/verify", json={"phone": PHONE, "otp": first})
        assert r.json()["error"]["code"] == "otp_invalid"
    assert client.post("/otp/verify", json={"phone": PHONE, "otp": second}).status_code == 200


def test_missing_phone_is_rejected(client):
    r = client.post("/otp/send", json={})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "missing_input"
    r = client.post("/otp/send", json={"phone": "   "})
    assert r.status_code == 400


def test_missing_code_is_rejected(client):
    r = client.post("/otp/verify", json={"phone": PHONE})
    assert r.status_code == 400
    assert r.json()["error"] == {"code": "missing_input", "message": "Phone and OTP are required"}


def test_invalid_phone_is_rejected(client):
    r = client.post("/otp/send", json={"phone": "12345"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_phone"


def test_malformed_body_is_bad_request(client):
    r = client.post("/otp/send", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_request"


def test_code_hidden_when_exposure_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "OTP_EXPOSE_CODE", False)
    body = _send(client)
    assert "otp" not in body
    assert body["success"] is True


def test_code_hidden_outside_dev_mode(client, monkeypatch):
    monkeypatch.setattr(settings, "DEV_MODE", False)
    monkeypatch.setattr(settings, "OTP_EXPOSE_CODE", True)
    assert "otp" not in _send(client)


def test_plaintext_code_is_not_stored(app, client):
    code = _send(client)["otp"]
    stored = app.state.otp.flows["otp"].store.lookup(PHONE)
    assert code not in stored.to_json()


def test_delivery_failure_removes_challenge(app, client, monkeypatch):
    from shiftcare_shared import SmsDeliveryError

    flow = app.state.otp.flows["otp"]

    def _fail(phone, code):
        raise SmsDeliveryError("gateway down")

    monkeypatch.setattr(flow.sms, "send_code", _fail)
    r = client.post("/otp/send", json={"phone": PHONE})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "otp_delivery_failed"
    assert flow.store.lookup(PHONE) is None


def test_flows_use_separate_namespaces(app, client, make_professional):
    make_professional(PHONE)
    open_code = _send(client)["otp"]
    r = client.post("/healthcare/otp/send", json={"phone": PHONE})
    assert r.status_code == 200
    # Issuing on the professional flow must not replace the open flow challenge
    assert client.post("/otp/verify", json={"phone": PHONE, "otp": open_code}).status_code == 200
    assert app.state.otp.flows["healthcare"].store.lookup(PHONE).consumed is False


def test_responses_carry_request_id(client):
    r = client.post("/otp/send", json={"phone": PHONE}, headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"


def test_repeated_sends_to_one_phone_are_throttled(app, client):
    first = _send(client)
    for _ in range(settings.OTP_SEND_MAX_PER_PHONE - 1):
        _send(client)
    store = app.state.otp.flows["otp"].store
    live = store.lookup(PHONE)

    r = client.post("/otp/send", json={"phone": PHONE})
    assert r.status_code == 429
    err = r.json()["error"]
    assert err["code"] == "otp_rate_limited"
    assert err["details"]["retry_after"] == int(r.headers["Retry-After"])
    # The refused request neither issued nor replaced a challenge
    assert store.lookup(PHONE).nonce == live.nonce
    assert first["success"] is True


def test_one_client_is_capped_across_phones(monkeypatch):
    from fastapi.testclient import TestClient

    from shiftcare.main import create_app

    monkeypatch.setattr(settings, "OTP_SEND_MAX_PER_CLIENT", 2)
    client = TestClient(create_app())
    codes = [client.post("/otp/send", json={"phone": f"+1555765000{i}"}).status_code for i in range(3)]
    assert codes == [200, 200, 429]


def test_otp_log_lines_carry_request_id(client, caplog):
    caplog.set_level(logging.INFO, logger="shiftcare.otp")
    client.post("/otp/send", json={"phone": PHONE}, headers={"X-Request-ID": "req-issue-7"})
    issued = [rec.getMessage() for rec in caplog.records if rec.name == "shiftcare.otp"]
    assert any("OTP issued" in msg and "req-issue-7" in msg for msg in issued)
