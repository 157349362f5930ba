def test_health(client):
    assert client.get("/v1/health").json() == {"status": "ok"}


def test_version(client):
    assert client.get("/v1/version").json() == {"version": "1.0.0"}


def test_responses_carry_request_id(client):
    resp = client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert resp.headers["X-Request-Id"] == "req-123"
