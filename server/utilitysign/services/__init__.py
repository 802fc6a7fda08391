from utilitysign.services import (
    notifications,
    order_store,
    outbox_service,
    signing_orchestrator,
    state_machine,
    validators,
)

__all__ = [
    "notifications",
    "order_store",
    "outbox_service",
    "signing_orchestrator",
    "state_machine",
    "validators",
]
