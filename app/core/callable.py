"""
Callable Protocol

Each callable is a POST route whose JSON body is the call data and whose
successful reply is {"result": <value>}. Failures are rendered as
{"error": {"status", "message", "details"}} with the HTTP status of the
error kind.
"""

from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict

from app.core.errors import CallableError, InternalError, InvalidArgumentError

logger = logging.getLogger("functions.callable")


class CallableRequest(BaseModel):
    """
    Call data. Proxy callables nest the vendor payload under "data" and pass
    auxiliary fields (endpoint, feature, ...) next to it; billing callables
    send flat fields.
    """
    model_config = ConfigDict(extra="allow")

    data: Optional[Dict[str, Any]] = None

    @property
    def payload(self) -> Dict[str, Any]:
        return self.data or {}

    def get(self, name: str, default: Any = None) -> Any:
        extra = self.model_extra or {}
        value = extra.get(name)
        return default if value is None else value

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CallableResponse(JSONResponse):
    """Wraps the handler's return value as {"result": ...}."""

    def render(self, content: Any) -> bytes:
        return super().render({"result": content})


class CallableRoute(APIRoute):
    """Turns unexpected handler exceptions into internal callable errors."""

    def get_route_handler(self) -> Callable:
        original_handler = super().get_route_handler()
        name = self.name

        async def callable_handler(request: Request):
            try:
                return await original_handler(request)
            except (CallableError, HTTPException, RequestValidationError):
                raise
            except Exception as e:
                logger.exception(f"Unhandled error in {name}: {e}")
                raise InternalError(str(e) or type(e).__name__) from e

        return callable_handler


def error_response(error: CallableError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=jsonable_encoder(error.to_response()),
    )


def install_error_handlers(app: FastAPI) -> None:
    """Render callable errors and body validation failures on the wire."""

    @app.exception_handler(CallableError)
    async def callable_error_handler(request: Request, exc: CallableError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc.kind.value}: {exc.message}")
        else:
            logger.info(f"{request.url.path} rejected: {exc.kind.value}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(
            InvalidArgumentError("Invalid request body", {"errors": exc.errors()})
        )
