"""Envelope helpers: every route answers ``{success, data?, error?, message?}``."""

from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def envelope(
    success: bool,
    data: Any = None,
    error: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = jsonable_encoder(data, by_alias=True, exclude_none=True)
    if error is not None:
        body["error"] = error
    if message is not None:
        body["message"] = message
    return body


def ok(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(True, data=data, message=message))


def fail(status_code: int, error: str, data: Any = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(False, data=data, error=error))
