"""
Domain errors for QuestionFlow

Every service raises one of these; the API layer turns them into a
structured JSON body via ``register_exception_handlers``.

  NotFound            - session, doubt or session code does not exist
  AmbiguousCode       - two active sessions share the same short code
  InvalidState        - operation not allowed in the current state (inactive session)
  AggregationFailure  - store read failed while computing confusion stats
  PersistenceFailure  - store write failed; nothing was broadcast
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("questionflow.errors")


class QuestionFlowError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class NotFound(QuestionFlowError):
    status_code = 404
    code = "not_found"


class AmbiguousCode(QuestionFlowError):
    status_code = 409
    code = "ambiguous_code"


class InvalidState(QuestionFlowError):
    status_code = 400
    code = "invalid_state"


class AggregationFailure(QuestionFlowError):
    status_code = 500
    code = "aggregation_failure"


class PersistenceFailure(QuestionFlowError):
    status_code = 500
    code = "persistence_failure"


async def _domain_error_handler(request: Request, exc: QuestionFlowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(QuestionFlowError, _domain_error_handler)
