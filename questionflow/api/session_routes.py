"""
Class Session API Routes

  POST  /api/sessions                         - start a live session
  GET   /api/sessions                         - list sessions (?active=)
  GET   /api/sessions/{id-or-code}            - one session
  PATCH /api/sessions/{id-or-code}/end        - deactivate
  PATCH /api/sessions/{id}/reactivate         - activate again (full id only)
  PATCH /api/sessions/{id-or-code}/settings   - toggle auto-merge / anonymity
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from questionflow.api.deps import Services, get_services

router = APIRouter()


class CreateSessionRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    instructor_name: Optional[str] = Field(None, alias="instructorName")
    auto_merge_doubts: bool = Field(True, alias="autoMergeDoubts")
    allow_anonymous: bool = Field(True, alias="allowAnonymous")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "title": "CS101 Recursion",
                "instructorName": "Dr. Rao",
                "autoMergeDoubts": True,
                "allowAnonymous": True,
            }
        }


class UpdateSettingsRequest(BaseModel):
    auto_merge_doubts: Optional[bool] = Field(None, alias="autoMergeDoubts")
    allow_anonymous: Optional[bool] = Field(None, alias="allowAnonymous")

    class Config:
        populate_by_name = True


@router.post("/sessions", status_code=201)
async def create_session(
    request: CreateSessionRequest,
    services: Services = Depends(get_services),
):
    session = await services.facade.create_session(
        title=request.title,
        instructor_name=request.instructor_name,
        auto_merge_doubts=request.auto_merge_doubts,
        allow_anonymous=request.allow_anonymous,
    )
    return {"success": True, "session": session.to_dict()}


@router.get("/sessions")
async def list_sessions(
    active: Optional[bool] = None,
    services: Services = Depends(get_services),
):
    sessions = await services.facade.list_sessions(active=active)
    return {
        "success": True,
        "sessions": [s.to_dict() for s in sessions],
        "count": len(sessions),
    }


@router.get("/sessions/{session_ref}")
async def get_session(session_ref: str, services: Services = Depends(get_services)):
    session = await services.facade.get_session(session_ref)
    return {"success": True, "session": session.to_dict()}


@router.patch("/sessions/{session_ref}/end")
async def end_session(session_ref: str, services: Services = Depends(get_services)):
    session = await services.facade.end_session(session_ref)
    return {"success": True, "session": session.to_dict()}


@router.patch("/sessions/{session_id}/reactivate")
async def reactivate_session(session_id: str, services: Services = Depends(get_services)):
    session = await services.facade.reactivate_session(session_id)
    return {"success": True, "session": session.to_dict()}


@router.patch("/sessions/{session_ref}/settings")
async def update_settings(
    session_ref: str,
    request: UpdateSettingsRequest,
    services: Services = Depends(get_services),
):
    session = await services.facade.update_settings(
        session_ref,
        auto_merge_doubts=request.auto_merge_doubts,
        allow_anonymous=request.allow_anonymous,
    )
    return {"success": True, "session": session.to_dict()}
