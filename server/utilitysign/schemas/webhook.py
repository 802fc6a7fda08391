from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WebhookModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class EventMetadata(WebhookModel):
    order_ref: str | None = Field(default=None, validation_alias=AliasChoices("orderRef", "order_ref", "orderId"))
    host_order_ref: str | None = Field(
        default=None, validation_alias=AliasChoices("hostOrderRef", "host_order_ref", "wpOrderId")
    )


class LifecycleData(WebhookModel):
    session_id: str | None = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    metadata: EventMetadata = Field(default_factory=EventMetadata)


class AuthenticationSucceededData(LifecycleData):
    user: dict[str, Any] | None = None


class FailureData(LifecycleData):
    error: str | dict[str, Any] | None = None


class SignatureCompletedData(LifecycleData):
    signature: dict[str, Any] | None = None
    document_url: str | None = Field(default=None, validation_alias=AliasChoices("documentUrl", "document_url"))


class AuthenticationSucceeded(WebhookModel):
    type: Literal["authentication.succeeded"]
    data: AuthenticationSucceededData


class AuthenticationFailed(WebhookModel):
    type: Literal["authentication.failed"]
    data: FailureData


class AuthenticationCancelled(WebhookModel):
    type: Literal["authentication.cancelled"]
    data: LifecycleData


class SignatureCompleted(WebhookModel):
    type: Literal["signature.completed"]
    data: SignatureCompletedData


class SignatureFailed(WebhookModel):
    type: Literal["signature.failed"]
    data: FailureData


LifecycleEvent = Annotated[
    Union[AuthenticationSucceeded, AuthenticationFailed, AuthenticationCancelled, SignatureCompleted, SignatureFailed],
    Field(discriminator="type"),
]

RECOGNIZED_LIFECYCLE_TYPES = frozenset(
    {
        "authentication.succeeded",
        "authentication.failed",
        "authentication.cancelled",
        "signature.completed",
        "signature.failed",
    }
)


class LifecycleEnvelope(WebhookModel):
    """Outer shape shared by every lifecycle delivery, known type or not."""

    type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class CompletionCallback(WebhookModel):
    """Terminal completion callback: ``{id, status, metadata, documentUrl}``."""

    id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    document_url: str | None = Field(default=None, validation_alias=AliasChoices("documentUrl", "document_url"))
    reason: str | None = Field(default=None, validation_alias=AliasChoices("reason", "error", "message"))


class WebhookAck(BaseModel):
    success: bool = True
    message: str
    disposition: str | None = None
