from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from tightship.core.errors import AppError, NotFoundError, app_error_handler
from tightship.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    @app.get("/missing")
    def missing():
        raise NotFoundError("Restaurant not found")

    return app


def test_generates_request_id_when_missing():
    client = TestClient(_make_app())

    resp = client.get("/")
    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    assert rid_header
    assert rid_header == resp.json().get("request_id")


def test_echoes_provided_request_id():
    client = TestClient(_make_app())

    resp = client.get("/", headers={"X-Request-Id": "test-rid-123"})
    assert resp.headers.get("x-request-id") == "test-rid-123"
    assert resp.json().get("request_id") == "test-rid-123"


def test_app_error_carries_request_id():
    client = TestClient(_make_app())

    resp = client.get("/missing", headers={"X-Request-Id": "rid-404"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["error"] == {"code": "not_found", "message": "Restaurant not found", "request_id": "rid-404"}
    assert body["detail"] == "Restaurant not found"


def test_oversized_request_id_is_truncated():
    client = TestClient(_make_app())

    resp = client.get("/", headers={"X-Request-Id": "r" * 500})
    assert resp.headers.get("x-request-id") == "r" * 128
