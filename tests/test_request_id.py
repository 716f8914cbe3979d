"""Tests for request ID middleware."""

import uuid

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from sheetgate.app.middleware.request_id import RequestIdMiddleware, get_request_id


@pytest.fixture
def client():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    return TestClient(app)


class TestRequestIdMiddleware:
    def test_generates_request_id(self, client):
        response = client.get("/echo")

        request_id = response.headers["X-Request-ID"]
        assert uuid.UUID(request_id)
        assert response.json()["request_id"] == request_id

    def test_preserves_incoming_request_id(self, client):
        response = client.get("/echo", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"
        assert response.json()["request_id"] == "req-abc"

    def test_ids_are_unique(self, client):
        first = client.get("/echo").headers["X-Request-ID"]
        second = client.get("/echo").headers["X-Request-ID"]
        assert first != second


def test_get_request_id_without_middleware():
    app = FastAPI()

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    assert TestClient(app).get("/echo").json() == {"request_id": "unknown"}
