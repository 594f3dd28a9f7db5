import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from tenantchat.api.error_handling import _error_code_for_status, service_error_response
from tenantchat.api.schemas import Envelope, ErrorBody
from tenantchat.service.errors import (
    AgentNotFoundError,
    CanceledError,
    ChatAccessDeniedError,
    ChatNotFoundError,
    ModelNotAllowedError,
)


def _body(response):
    return json.loads(response.body)


def test_error_body_rejects_unknown_codes():
    with pytest.raises(PydanticValidationError):
        ErrorBody(code="teapot", message="nope")
    assert ErrorBody(code="conflict", message="dup").details is None


def test_envelope_status_is_constrained():
    with pytest.raises(PydanticValidationError):
        Envelope(status="maybe")
    assert Envelope(status="ok").request_id


@pytest.mark.parametrize(
    "status, code",
    [
        (400, "validation_error"),
        (403, "plan_limit_exceeded"),
        (404, "not_found"),
        (409, "conflict"),
        (422, "validation_error"),
        (499, "canceled"),
        (502, "upstream_failure"),
        (503, "server_error"),
    ],
)
def test_status_to_code(status, code):
    assert _error_code_for_status(status) == code


def test_access_denied_renders_as_not_found():
    denied = ChatAccessDeniedError("chat_x")
    missing = ChatNotFoundError("chat_x")
    assert denied.kind == "access_denied"
    assert missing.kind == "not_found"

    denied_response = service_error_response(denied)
    missing_response = service_error_response(missing)
    assert denied_response.status_code == missing_response.status_code == 404
    denied_error = _body(denied_response)["error"]
    assert denied_error == _body(missing_response)["error"]
    assert denied_error["code"] == "not_found"


def test_plan_limit_details_flag_upgrade():
    response = service_error_response(ModelNotAllowedError("gpt-4o", ["gpt-4o-mini"]))
    assert response.status_code == 403
    error = _body(response)["error"]
    assert error["details"] == {
        "model": "gpt-4o",
        "allowed_models": ["gpt-4o-mini"],
        "upgrade_required": True,
    }


def test_empty_detail_is_null():
    response = service_error_response(CanceledError("stopped"))
    assert response.status_code == 499
    assert _body(response)["error"] == {"code": "canceled", "message": "stopped", "details": None}


def test_to_dict_uses_client_code():
    assert AgentNotFoundError("a1").to_dict() == {
        "kind": "not_found",
        "message": "agent not found",
        "details": {"agent_id": "a1"},
    }
