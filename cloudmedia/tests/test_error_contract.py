"""Tests for normalized error responses."""
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from cloudmedia.core.errors import (
    AppError,
    ConfigurationError,
    ExternalServiceError,
    app_error_handler,
    unhandled_exception_handler,
)
from cloudmedia.core.middleware.request_id import RequestIdMiddleware
from cloudmedia.tests.mocks import auth_headers


def _app_raising(exc):
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/boom")
    def boom():
        raise exc

    return TestClient(test_app, raise_server_exceptions=False)


def test_limit_error_has_standard_shape(client, make_org):
    make_org(plan="creator")
    headers = auth_headers("user_owner")
    client.post("/api/brand-kits", json={"name": "One"}, headers=headers)

    resp = client.post("/api/brand-kits", json={"name": "Two"}, headers=headers)

    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert rid
    assert body["error"]["request_id"] == rid
    assert body["error"]["code"] == "limit_reached"
    assert body["detail"] == body["error"]["message"]


def test_incoming_request_id_is_echoed(client):
    resp = client.get("/api/organization", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"
    assert resp.json()["error"]["request_id"] == "req-123"


def test_request_validation_is_422(client, make_org):
    make_org()
    resp = client.post("/api/brand-kits", json={}, headers=auth_headers("user_owner"))
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_configuration_error_hides_message():
    resp = _app_raising(ConfigurationError("plan 'gold' missing from catalog")).get("/boom")
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "configuration_error"
    assert "gold" not in resp.text


def test_external_failure_is_generic_with_retryable_flag():
    resp = _app_raising(ExternalServiceError("cloudinary", "socket timeout to api.cloudinary.com", retryable=True)).get("/boom")
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"]["code"] == "external_service_failure"
    assert body["error"]["details"] == {"retryable": True}
    assert "cloudinary.com" not in resp.text


def test_unhandled_exception_is_500_without_internals(caplog):
    with caplog.at_level(logging.ERROR, logger="cloudmedia"):
        resp = _app_raising(RuntimeError("secret connection string")).get("/boom")
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
    assert "secret" not in resp.text
