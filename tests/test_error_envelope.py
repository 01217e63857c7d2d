"""Error envelope shape and code validation."""

import json

import pytest
from pydantic import ValidationError

from communityhub.api.error_handling import _error_response
from communityhub.api.schemas import Envelope, ErrorBody


@pytest.mark.parametrize(
    "code",
    ["unauthorized", "forbidden", "not_found", "validation_error", "invalid_state", "provider_error"],
)
def test_known_codes_are_accepted(code):
    assert ErrorBody(code=code, message="m").code == code


def test_unknown_code_is_rejected():
    with pytest.raises(ValidationError):
        ErrorBody(code="teapot", message="m")


def test_envelope_status_is_constrained():
    with pytest.raises(ValidationError):
        Envelope(status="maybe")


def test_error_response_body():
    response = _error_response(403, "You can only modify your own posts", {"resource_id": "p1"})
    body = json.loads(response.body)

    assert response.status_code == 403
    assert body["status"] == "error"
    assert body["data"] is None
    assert body["error"] == {
        "code": "forbidden",
        "message": "You can only modify your own posts",
        "details": {"resource_id": "p1"},
    }
    assert body["request_id"]


def test_unmapped_status_falls_back_to_server_error():
    body = json.loads(_error_response(418, "odd").body)
    assert body["error"]["code"] == "server_error"


def test_unknown_route_is_enveloped():
    from fastapi.testclient import TestClient

    from communityhub import app as app_module

    response = TestClient(app_module.app).get("/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
