# tests/test_api.py
import os

from fastapi import status
from fastapi.testclient import TestClient


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/api/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "ok"
    assert response.json()["live_api_configured"] is True


def test_start_live_session(client):
    """Questions are normalized and the key is handed back with the session data."""
    response = client.post("/api/interview/start-live-session", json={
        "jobId": "job-1",
        "resumeId": "resume-9",
        "questions": {
            "technical": ["1. explain the GIL", "2) what is a coroutine?"],
            "behavioral": ["tell me about yourself", "   "],
        },
        "jobDescription": "Python backend role",
        "resumeContent": "Resume text",
    })
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["success"] is True
    assert body["apiKey"] == "test-google-key"
    assert body["sessionData"]["questions"] == {
        "technical": ["Explain the GIL?", "What is a coroutine?"],
        "behavioral": ["Tell me about yourself?"],
    }
    assert body["sessionData"]["jobId"] == "job-1"


def test_start_live_session_requires_job_id(client):
    response = client.post("/api/interview/start-live-session", json={"questions": {"technical": []}})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error"] == "Job ID is required"


def test_start_live_session_without_api_key(settings):
    """Test missing key configuration."""
    from live_interview.config import get_settings
    from live_interview.interface.api.main import create_app

    os.environ.pop("GOOGLE_AI_API_KEY", None)
    get_settings.cache_clear()
    client = TestClient(create_app())

    response = client.post("/api/interview/start-live-session", json={"jobId": "job-1"})
    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["error"] == "Google AI API key not configured"
