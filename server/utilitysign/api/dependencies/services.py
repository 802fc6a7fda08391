from fastapi import Request

from utilitysign.core.config import Settings
from utilitysign.integrations.backend import RequestGateway
from utilitysign.integrations.webhooks import WebhookLog, WebhookVerifier
from utilitysign.services.notifications import OutboxDispatcher
from utilitysign.services.signing_orchestrator import SigningOrchestrator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> RequestGateway:
    return request.app.state.gateway


def get_orchestrator(request: Request) -> SigningOrchestrator:
    return request.app.state.orchestrator


def get_verifier(request: Request) -> WebhookVerifier:
    return request.app.state.verifier


def get_webhook_log(request: Request) -> WebhookLog:
    return request.app.state.webhook_log


def get_outbox_dispatcher(request: Request) -> OutboxDispatcher | None:
    return request.app.state.outbox_dispatcher
