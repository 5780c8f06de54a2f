# tests/test_bootstrap.py
import json

import httpx
import pytest

from live_interview.core.exceptions import BootstrapError
from live_interview.managers.bootstrap import SessionBootstrapClient

URL = "http://sessions.test/api/interview/start-live-session"


def make_client(handler):
    transport = httpx.MockTransport(handler)
    return SessionBootstrapClient(URL, client=httpx.AsyncClient(transport=transport))


async def test_successful_bootstrap(session_request):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "success": True,
            "apiKey": "live-key",
            "sessionData": {"questions": {"technical": ["Q1?"], "behavioral": []}},
        })

    credentials, session_data = await make_client(handler).start_session(session_request)

    assert credentials.api_key == "live-key"
    assert "live-key" not in repr(credentials)
    assert session_data["questions"]["technical"] == ["Q1?"]
    assert seen["body"]["jobId"] == "job-42"
    assert seen["body"]["questions"]["behavioral"] == ["Tell me about a production incident?"]
    assert seen["body"]["resumeContent"] == "Five years of Python."


async def test_error_response_raises(session_request):
    def handler(request):
        return httpx.Response(400, json={"error": "Job ID is required"})

    with pytest.raises(BootstrapError) as exc:
        await make_client(handler).start_session(session_request)
    assert exc.value.message == "Job ID is required"


async def test_missing_key_raises(session_request):
    def handler(request):
        return httpx.Response(200, json={"success": True, "sessionData": {}})

    with pytest.raises(BootstrapError):
        await make_client(handler).start_session(session_request)


async def test_network_failure_raises(session_request):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(BootstrapError):
        await make_client(handler).start_session(session_request)


@pytest.mark.parametrize("status, payload", [(502, None), (200, []), (200, "oops")])
async def test_non_object_body_raises(session_request, status, payload):
    """JSON that is not an object is treated like an unreadable reply."""
    def handler(request):
        return httpx.Response(status, json=payload)

    with pytest.raises(BootstrapError) as exc:
        await make_client(handler).start_session(session_request)
    assert exc.value.message == "Failed to start session"


async def test_non_object_session_data_is_ignored(session_request):
    def handler(request):
        return httpx.Response(200, json={"success": True, "apiKey": "live-key", "sessionData": ["x"]})

    credentials, session_data = await make_client(handler).start_session(session_request)
    assert credentials.api_key == "live-key"
    assert session_data == {}
