"""
Confusion API Routes

  POST /api/sessions/{id-or-code}/confusion  - report a confusion level (0-3)
  GET  /api/sessions/{id-or-code}/confusion  - live distribution

The GET endpoint always answers with a well-formed ``stats`` object so
dashboards never have to deal with a missing body.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from questionflow.api.deps import Services, get_services
from questionflow.core.errors import AmbiguousCode, InvalidState, NotFound
from questionflow.services.confusion import zero_snapshot

router = APIRouter()


class ConfusionRequest(BaseModel):
    student_id: str = Field(..., min_length=1, alias="studentId")
    student_name: str = Field("", alias="studentName")
    level: int = Field(..., ge=0, le=3, description="0 clear, 1 slight, 2 confused, 3 lost")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {"studentId": "student123", "studentName": "Alice", "level": 2}
        }


@router.post("/sessions/{session_ref}/confusion", status_code=201)
async def submit_confusion(
    session_ref: str,
    request: ConfusionRequest,
    services: Services = Depends(get_services),
):
    try:
        session = await services.facade.require_active(session_ref)
    except (NotFound, AmbiguousCode, InvalidState) as e:
        return JSONResponse(status_code=400, content=e.to_dict())

    reading, stats = await services.confusion.record(
        session_id=session.id,
        student_id=request.student_id,
        level=request.level,
        student_name=request.student_name,
    )
    return {"success": True, "confusion": reading, "stats": stats}


@router.get("/sessions/{session_ref}/confusion")
async def get_confusion_stats(session_ref: str, services: Services = Depends(get_services)):
    try:
        session_id = services.facade.resolver.resolve(session_ref)
    except (NotFound, AmbiguousCode) as e:
        content = e.to_dict()
        content["stats"] = zero_snapshot()
        return JSONResponse(status_code=e.status_code, content=content)

    result = await services.confusion.compute_snapshot(session_id)
    return {"success": True, "stats": result.snapshot_or_zero(), "degraded": not result.ok}
