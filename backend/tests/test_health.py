from app.db import init_db
from app.main import app
from fastapi.testclient import TestClient

client = TestClient(app)


def setup_module(module):
    init_db()


def test_health_ok():
    res = client.get("/api/health")
    assert res.status_code == 200
    body = res.json()
    assert "status" in body
    assert body["db"] is True
    assert "identity_gateway" in body
    assert body["gateway"] in ("mock", "klarna")
