"""Service response envelope shared by every JSON answer the API produces.

Shape: {"message": str, "payload": any, "success": bool, "userExists": bool}
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ServiceResponse(BaseModel):
    """The common response envelope."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    payload: Any = None
    success: bool
    user_exists: bool = Field(default=True, alias="userExists")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def service_response(
    message: str,
    payload: Any = None,
    *,
    success: bool = True,
    user_exists: bool = True,
    status_code: int = 200,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    envelope = ServiceResponse(
        message=message, payload=payload, success=success, user_exists=user_exists
    )
    return JSONResponse(
        envelope.to_json(),
        status_code=status_code,
        headers=dict(headers) if headers else None,
    )


def service_error(
    message: str,
    status_code: int,
    *,
    user_exists: bool = True,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Envelope with success=false and a null payload."""
    return service_response(
        message,
        None,
        success=False,
        user_exists=user_exists,
        status_code=status_code,
        headers=headers,
    )
