from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from live_interview.config import Settings, get_settings
from live_interview.managers.prompts import format_question

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/interview", tags=["interview"])


class QuestionSet(BaseModel):
    technical: List[str] = Field(default_factory=list)
    behavioral: List[str] = Field(default_factory=list)


class StartSessionRequest(BaseModel):
    jobId: Optional[str] = None
    resumeId: Optional[str] = None
    questions: Optional[QuestionSet] = None
    jobDescription: Optional[str] = None
    resumeContent: Optional[str] = None


@router.post("/start-live-session")
async def start_live_session(body: StartSessionRequest, settings: Settings = Depends(get_settings)):
    """Hand out the live API key together with the normalized session context."""
    if not body.jobId:
        return JSONResponse(status_code=400, content={"error": "Job ID is required"})

    if not settings.GOOGLE_AI_API_KEY:
        logger.error("live_api_key_missing")
        return JSONResponse(status_code=500, content={"error": "Google AI API key not configured"})

    questions = body.questions or QuestionSet()
    session_data = {
        "jobId": body.jobId,
        "resumeId": body.resumeId,
        "questions": {
            "technical": [format_question(q) for q in questions.technical if q.strip()],
            "behavioral": [format_question(q) for q in questions.behavioral if q.strip()],
        },
        "jobDescription": body.jobDescription,
        "resumeContent": body.resumeContent,
    }
    logger.info(
        "live_session_started",
        job_id=body.jobId,
        technical=len(session_data["questions"]["technical"]),
        behavioral=len(session_data["questions"]["behavioral"]),
    )
    return {"success": True, "apiKey": settings.GOOGLE_AI_API_KEY, "sessionData": session_data}
