def test_health_endpoint(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}


def test_health_is_not_tenant_scoped(client):
    resp = client.get("/healthz", headers={"x-tenant-id": "999"})
    assert resp.status_code == 200


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_NOT_FOUND"
    assert body["meta"]["trace_id"]
