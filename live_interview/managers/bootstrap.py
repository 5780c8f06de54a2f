from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from ..application.interview_session import ConnectionCredentials, SessionRequest
from ..core.exceptions import BootstrapError

logger = structlog.get_logger(__name__)


class SessionBootstrapClient:
    """Asks the session-start service for a live API key and the session context."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def start_session(self, request: SessionRequest) -> Tuple[ConnectionCredentials, Dict[str, Any]]:
        logger.info("session_bootstrap_requested", job_id=request.job_id, url=self.url)
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=request.to_payload(), timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=request.to_payload())
        except httpx.HTTPError as e:
            logger.error("session_bootstrap_failed", error=str(e))
            raise BootstrapError(f"Failed to start session: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or not body.get("success"):
            detail = body.get("details") or body.get("error") or "Failed to start session"
            logger.error("session_bootstrap_rejected", status=response.status_code, detail=detail)
            raise BootstrapError(detail)

        api_key = body.get("apiKey")
        if not api_key:
            raise BootstrapError("Session start response did not include credentials")

        session_data = body.get("sessionData")
        if not isinstance(session_data, dict):
            session_data = {}

        logger.info("session_bootstrap_succeeded", job_id=request.job_id)
        return ConnectionCredentials(api_key=api_key), session_data
