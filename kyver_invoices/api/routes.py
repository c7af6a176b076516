"""
API routes: provider webhooks, checkout landing pages and monitoring.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kyver_invoices.core.exceptions import StoreUnavailableError
from kyver_invoices.integrations import ProviderError, UnknownProviderError, WebhookError

from .schemas import CheckoutReturnResponse, HealthCheckResponse, WebhookResponse
from .services import ServiceContainer

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
checkout_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> ServiceContainer:
    """Dependency returning the services built by the application lifespan."""
    return request.app.state.services


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Payment provider webhook endpoint",
    description="Verify and reconcile Stripe or PayPal webhook events",
)
async def provider_webhook(
    provider: str,
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle a provider webhook delivery.

    Always 200 once the delivery is verified and handled, including
    duplicates and events for unknown invoices, so providers stop retrying.
    """
    structlog.contextvars.bind_contextvars(webhook_provider=provider)
    body = await request.body()

    try:
        return await services.webhook_handler.handle(provider, body, request.headers)

    except UnknownProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except WebhookError as e:
        logger.warning("api_webhook_rejected", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except StoreUnavailableError as e:
        logger.error("api_webhook_store_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store temporarily unavailable",
        )

    except ProviderError as e:
        logger.error("api_webhook_provider_error", error=str(e), error_type=e.error_type.value)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider temporarily unavailable",
        )


@checkout_router.get(
    "/success",
    response_model=CheckoutReturnResponse,
    summary="Checkout success landing page",
)
async def checkout_success(reference: Optional[str] = None) -> Dict[str, Any]:
    """Where providers send the payer after a completed checkout."""
    return {
        "status": "success",
        "reference": reference,
        "message": "Thanks! Your payment is being confirmed; you'll get a message in chat.",
    }


@checkout_router.get(
    "/cancelled",
    response_model=CheckoutReturnResponse,
    summary="Checkout cancelled landing page",
)
async def checkout_cancelled(reference: Optional[str] = None) -> Dict[str, Any]:
    """Where providers send the payer after abandoning a checkout."""
    return {
        "status": "cancelled",
        "reference": reference,
        "message": "Payment cancelled. Use /invoice pay in chat to try again.",
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
