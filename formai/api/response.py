"""The ``{"data": ..., "error": ...}`` envelope every endpoint answers with."""

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ErrorBody(BaseModel):
    code: str
    message: str


class Envelope(BaseModel):
    data: Any = None
    error: ErrorBody | None = None


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    """Wrap a payload; models, lists of models and datetimes are encoded."""
    envelope = Envelope(data=jsonable_encoder(data))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def fail(status_code: int, code: str, message: str) -> JSONResponse:
    envelope = Envelope(error=ErrorBody(code=code, message=message))
    return JSONResponse(status_code=status_code, content=envelope.model_dump())
