# app/api/endpoints/services.py
from fastapi import APIRouter, HTTPException, Query, Request, status
from typing import Any, Optional
import logging

from app.api.models.service import ServiceRegistrationRequest, ServiceRegistrationResponse
from app.x402.activity import ActivityType, get_activity_stats, log_activity, read_activity_log
from app.x402.compliance import audit_service
from app.x402.middleware import TX_HASH_HEADER

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/register",
    response_model=ServiceRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an x402 Service"
)
def register_service(registration: ServiceRegistrationRequest, request: Request) -> Any:
    """
    Registers a third-party x402 service (paid operation, 1 USDC).

    The payment gate admits the request before this handler runs. The service
    URL is then audited for x402 compliance; the registration is accepted
    whatever the verdict, and the verdict is returned so the catalog can
    display it.

    Returns:
        ServiceRegistrationResponse: The registration and its compliance report
    """
    report = audit_service(registration.url)
    tx_hash = request.headers.get(TX_HASH_HEADER)

    logger.info(f"New service registered: \"{registration.name}\" ({report.verdict.value})")
    log_activity(
        ActivityType.REGISTER,
        f"New service: \"{registration.name}\" ({report.verdict.value})",
        tx_hash=tx_hash,
    )

    return ServiceRegistrationResponse(
        message=f"Service \"{registration.name}\" registered successfully!",
        service=registration,
        tx_hash=tx_hash,
        verification=report,
    )


@router.get("/activity", summary="Recent Payment Activity")
def list_activity(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of events to return."),
    type: Optional[str] = Query(None, description="Filter by event type (402, payment, replay_blocked, register).")
) -> Any:
    """
    Returns recent activity events, most recent first, with summary counts.
    """
    event_type = None
    if type:
        try:
            event_type = ActivityType(type)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown activity type: {type}"
            )

    return {
        "events": read_activity_log(max_entries=limit, event_type=event_type),
        "stats": get_activity_stats(),
    }
