from fastapi import FastAPI
from prometheus_client import make_asgi_app

from reconciler.core.config import settings
from reconciler.core.logging import setup_logging
from reconciler.routers import payment_mappings, reconciliation, subscriptions, webhooks

OPENAPI_TAGS = [
    {"name": "Webhooks", "description": "Inbound payment provider notifications."},
    {"name": "Subscriptions", "description": "Checkout initiation and the local subscription mirror."},
    {"name": "Reconciliation", "description": "Operator controls for reconciliation and webhook replay."},
    {"name": "Payment Mappings", "description": "Operator memo of payments that carry no reference."},
]

setup_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Keeps local subscriptions converged with the payment provider: "
        "webhook ingestion, event matching, guarded state transitions, "
        "payment ledger and polling reconciliation."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(subscriptions.router, prefix="/v1/subscriptions", tags=["Subscriptions"])
app.include_router(reconciliation.router, prefix="/internal", tags=["Reconciliation"])
app.include_router(
    payment_mappings.router,
    prefix="/internal/payment-mappings",
    tags=["Payment Mappings"],
)
app.mount("/metrics", make_asgi_app())


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "environment": settings.ENVIRONMENT,
        "status": "running",
    }
