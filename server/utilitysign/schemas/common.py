from typing import Any

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ErrorDetail(BaseModel):
    kind: str
    message: str
    retryable: bool = False
    step: str | None = None
    user_message: str | None = None
    error_code: str | None = None
    validation_errors: dict[str, list[str]] | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    correlation_id: str | None = None


class HealthResponse(BaseModel):
    status: str
    environment: str
    backend: dict[str, Any] | None = None
