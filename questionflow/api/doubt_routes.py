"""
Doubt API Routes

  POST  /api/sessions/{id-or-code}/doubts   - submit (auto-merges near duplicates)
  GET   /api/sessions/{id-or-code}/doubts   - canonical doubts (?answered=&topic=)
  GET   /api/doubts/{id}                    - one doubt
  PATCH /api/doubts/{id}/answer             - mark answered
  PATCH /api/doubts/{id}/upvote             - toggle a student's upvote
"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from questionflow.api.deps import Services, get_services
from questionflow.core.errors import AmbiguousCode, InvalidState, NotFound

router = APIRouter()


# ============ Request Models ============

class SubmitDoubtRequest(BaseModel):
    """A student question for a live session"""
    question: str = Field(..., min_length=1, max_length=2000)
    student_id: str = Field(..., min_length=1, alias="studentId")
    student_name: str = Field("", alias="studentName")
    is_anonymous: bool = Field(False, alias="isAnonymous")
    confusion_level: Optional[int] = Field(None, ge=0, le=3, alias="confusionLevel")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "question": "What is recursion?",
                "studentId": "student123",
                "studentName": "Alice",
                "isAnonymous": False,
                "confusionLevel": 2,
            }
        }


class AnswerRequest(BaseModel):
    answer: Optional[str] = None


class UpvoteRequest(BaseModel):
    student_id: str = Field(..., min_length=1, alias="studentId")

    class Config:
        populate_by_name = True


# ============ Endpoints ============

@router.post("/sessions/{session_ref}/doubts", status_code=201)
async def submit_doubt(
    session_ref: str,
    request: SubmitDoubtRequest,
    services: Services = Depends(get_services),
):
    """
    Submit a doubt.  When the session has auto-merge on and a similar
    unmerged doubt exists, the submission is folded into it and the response
    carries ``merged: true`` with the canonical doubt.
    """
    try:
        session = await services.facade.require_active(session_ref)
        if request.is_anonymous and not session.allow_anonymous:
            raise InvalidState("Anonymous doubts are disabled for this session")
    except (NotFound, AmbiguousCode, InvalidState) as e:
        return JSONResponse(status_code=400, content=e.to_dict())

    doubt, merged = await services.ledger.submit(
        session_id=session.id,
        question=request.question.strip(),
        student_id=request.student_id,
        student_name=request.student_name,
        is_anonymous=request.is_anonymous,
        confusion_level=request.confusion_level,
        auto_merge=session.auto_merge_doubts,
    )
    return {"success": True, "doubt": doubt, "merged": merged}


@router.get("/sessions/{session_ref}/doubts")
async def list_doubts(
    session_ref: str,
    answered: Optional[bool] = None,
    topic: Optional[str] = None,
    services: Services = Depends(get_services),
):
    session = await services.facade.get_session(session_ref)
    doubts = await services.ledger.list_doubts(session.id, answered=answered, topic=topic)
    return {"success": True, "doubts": doubts, "count": len(doubts)}


@router.get("/doubts/{doubt_id}")
async def get_doubt(doubt_id: str, services: Services = Depends(get_services)):
    return {"success": True, "doubt": await services.ledger.get_doubt(doubt_id)}


@router.patch("/doubts/{doubt_id}/answer")
async def mark_answered(
    doubt_id: str,
    request: Optional[AnswerRequest] = None,
    services: Services = Depends(get_services),
):
    answer = request.answer if request else None
    doubt = await services.ledger.mark_answered(doubt_id, answer=answer)
    return {"success": True, "doubt": doubt}


@router.patch("/doubts/{doubt_id}/upvote")
async def toggle_upvote(
    doubt_id: str,
    request: UpvoteRequest,
    services: Services = Depends(get_services),
):
    doubt = await services.ledger.toggle_upvote(doubt_id, request.student_id)
    return {"success": True, "doubt": doubt}
