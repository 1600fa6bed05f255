# tripod/transport/http_app.py
"""
HTTP application for the operations backend.

Security layers:
1. Public: /health and /ready only
2. Protected: every /api and /admin route requires the admin bearer token
3. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from tripod.admin.errors import AdminError
from tripod.admin.models import (
    AssignRequest,
    BundleRequestCreate,
    BundleRequestUpdate,
    ChangeRequestBody,
    ClientCompanyCreateRequest,
    ClientCompanyUpdateRequest,
    CouponCreateRequest,
    CouponUpdateRequest,
    CouponValidateRequest,
    DesignerCapacityCreateRequest,
    DesignerCapacityUpdateRequest,
    OkResponse,
    PackSubscriptionCreateRequest,
    PaymentActionRequest,
    PriorityDistributionModel,
    RefundCreateRequest,
    RefundProcessRequest,
    RuleCreateRequest,
    RuleUpdateRequest,
    ServiceCreateRequest,
    ServiceRequestCreate,
    ServiceRequestUpdate,
    VendorCapacityCreateRequest,
    VendorCapacityUpdateRequest,
    VendorProfileCreateRequest,
    VendorProfileUpdateRequest,
)
from tripod.admin.billing import get_billing_service
from tripod.admin.requests import get_request_service
from tripod.admin.service import get_admin_service
from tripod.config import settings
from tripod.core.listing import RequestFilter
from tripod.infra.db_async import close_pool, init_pool
from tripod.infra.health_checks_async import get_async_health_checker
from tripod.infra.logging_config import get_logger, setup_logging
from tripod.infra.metrics import get_metrics_collector
from tripod.infra.schema_validator import validate_schema_version
from tripod.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from tripod.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    require_admin_auth,
    sanitize_error_message,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)

ADMIN = [Depends(require_admin_auth)]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    # Migrations run separately: python -m tripod.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(
            f"Schema validated: {schema_result['current_version']}",
            extra=schema_result,
        )
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m tripod.infra.migrate",
            exc_info=True,
        )
        raise

    # Only "all" and "worker" processes consume the queue.
    job_worker = None
    if settings.run_mode in ("all", "worker") and settings.job_worker_enabled:
        from tripod.core.dispatch.jobs import register_dispatch_handlers
        from tripod.infra.job_worker import JobWorker
        from tripod.infra.pg_job_repo_async import get_job_repo

        job_worker = JobWorker(
            repo=get_job_repo(),
            poll_interval=settings.job_worker_poll_interval,
            batch_size=settings.job_worker_batch_size,
            base_retry_delay=settings.job_worker_base_retry_delay,
            stale_timeout=settings.job_worker_stale_timeout,
        )
        register_dispatch_handlers(job_worker)
        await job_worker.start()
    elif settings.run_mode not in ("all", "worker"):
        logger.info(f"Job worker skipped (run_mode={settings.run_mode})")
    else:
        logger.info("Job worker skipped (job_worker_enabled=false), automation runs inline")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")

    if job_worker is not None:
        await job_worker.stop()

    from tripod.infra.http_client import close_all_sessions
    await close_all_sessions()

    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Tripod Ops",
    description="Fulfillment operations backend with automatic job routing",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(AdminError)
async def admin_error_handler(request: Request, exc: AdminError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    error_message = sanitize_error_message(exc, settings.is_production)

    return JSONResponse(
        status_code=500,
        content={"error": error_message},
    )


def _parse(model, payload: dict):
    try:
        return model(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness check - PUBLIC endpoint."""
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


# ============================================================================
# OPERATIONS ENDPOINTS (admin token)
# ============================================================================

@app.get("/health/detailed", dependencies=ADMIN)
async def detailed_health():
    """Full health report including backlog and job queue checks."""
    health_checker = get_async_health_checker()
    return await health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=ADMIN)
def metrics():
    collector = get_metrics_collector()
    return collector.get_metrics()


@app.post("/admin/metrics/reset", dependencies=ADMIN)
def admin_reset_metrics():
    logger.warning("Metrics reset triggered")
    get_metrics_collector().reset()
    return {"ok": True, "message": "Metrics reset"}


@app.get("/admin/jobs", dependencies=ADMIN)
async def admin_jobs_status(
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
):
    """
    Job queue status.
    Returns counts by status and recent jobs.
    """
    from tripod.infra.pg_job_repo_async import get_job_repo

    repo = get_job_repo()
    counts = await repo.count_by_status()
    recent = await repo.get_recent(limit=limit, status=status, job_type=job_type)

    return {
        "counts": counts,
        "recent": [
            {
                "id": j.id,
                "type": j.job_type,
                "status": j.status,
                "attempts": j.attempts,
                "max_attempts": j.max_attempts,
                "error": j.error_message,
                "created_at": j.created_at.isoformat(),
                "scheduled_at": j.scheduled_at.isoformat(),
            }
            for j in recent
        ],
    }


@app.post("/admin/jobs/cleanup", dependencies=ADMIN)
async def admin_jobs_cleanup():
    """Purge old completed/failed jobs and reset stale running jobs."""
    from tripod.infra.pg_job_repo_async import get_job_repo

    repo = get_job_repo()
    completed = await repo.cleanup_completed(ttl_days=settings.job_cleanup_completed_ttl_days)
    failed = await repo.cleanup_failed(ttl_days=settings.job_cleanup_failed_ttl_days)
    stale = await repo.reset_stale_running(timeout_seconds=settings.job_worker_stale_timeout)

    return {
        "deleted_completed": completed,
        "deleted_failed": failed,
        "reset_stale": stale,
    }


# ============================================================================
# CATALOG
# ============================================================================

@app.get("/api/services", dependencies=ADMIN)
async def list_services(active_only: bool = True):
    return {"services": await get_admin_service().list_services(active_only=active_only)}


@app.post("/api/services", dependencies=ADMIN, status_code=201)
async def create_service(payload: dict):
    req = _parse(ServiceCreateRequest, payload)
    return await get_admin_service().create_service(req)


@app.get("/api/services/{service_id}", dependencies=ADMIN)
async def get_service(service_id: str):
    return await get_admin_service().get_service(service_id)


@app.get("/api/packs/{pack_id}/pricing", dependencies=ADMIN)
async def pack_pricing(pack_id: str):
    """Bundle vs. individual pricing and savings for a service pack."""
    return await get_request_service().pack_pricing(pack_id)


# ============================================================================
# SERVICE REQUESTS
# ============================================================================

@app.get("/api/service-requests", dependencies=ADMIN)
async def list_service_requests(user_id: Optional[str] = None, status: Optional[str] = None):
    items = await get_request_service().list_service_requests(user_id=user_id, status=status)
    return {"service_requests": items}


@app.post("/api/service-requests", dependencies=ADMIN, status_code=201)
async def submit_service_request(payload: dict):
    """
    Submit an ad-hoc job. Enforces the priority quota, redeems the coupon and
    schedules automatic assignment.
    """
    req = _parse(ServiceRequestCreate, payload)
    return await get_request_service().submit_service_request(req)


@app.get("/api/service-requests/{request_id}", dependencies=ADMIN)
async def get_service_request(request_id: str):
    return await get_request_service().get_service_request(request_id)


@app.patch("/api/service-requests/{request_id}", dependencies=ADMIN)
async def update_service_request(request_id: str, payload: dict):
    req = _parse(ServiceRequestUpdate, payload)
    return await get_request_service().update_service_request(request_id, req)


@app.post("/api/service-requests/{request_id}/assign", dependencies=ADMIN)
async def assign_service_request(request_id: str, payload: dict):
    """Manual assignment; locks the job against automatic reassignment."""
    req = _parse(AssignRequest, payload)
    return await get_request_service().assign(request_id, req, actor="admin")


@app.post("/api/service-requests/{request_id}/deliver", dependencies=ADMIN)
async def deliver_service_request(request_id: str):
    return await get_request_service().deliver(request_id, actor="admin")


@app.post("/api/service-requests/{request_id}/change-request", dependencies=ADMIN)
async def change_request(request_id: str, payload: dict | None = None):
    req = _parse(ChangeRequestBody, payload or {})
    return await get_request_service().request_change(request_id, req.note, actor="admin")


@app.post("/api/service-requests/{request_id}/cancel", dependencies=ADMIN)
async def cancel_service_request(request_id: str):
    return await get_request_service().cancel(request_id, actor="admin")


@app.post("/api/service-requests/{request_id}/auto-assign", dependencies=ADMIN)
async def rerun_auto_assign(request_id: str):
    """Run automatic assignment now and return the outcome."""
    return await get_request_service().rerun_automation(request_id)


@app.get("/api/service-requests/{request_id}/automation-logs", dependencies=ADMIN)
async def automation_logs(request_id: str):
    return {"logs": await get_request_service().automation_logs(request_id)}


@app.get("/api/priority-quota", dependencies=ADMIN)
async def priority_quota(user_id: str):
    """How many urgent/high jobs the client may still open."""
    return await get_request_service().priority_quota(user_id)


# ============================================================================
# BUNDLE REQUESTS
# ============================================================================

@app.get("/api/bundle-requests", dependencies=ADMIN)
async def list_bundle_requests(user_id: Optional[str] = None, status: Optional[str] = None):
    items = await get_request_service().list_bundle_requests(user_id=user_id, status=status)
    return {"bundle_requests": items}


@app.post("/api/bundle-requests", dependencies=ADMIN, status_code=201)
async def submit_bundle_request(payload: dict):
    req = _parse(BundleRequestCreate, payload)
    return await get_request_service().submit_bundle_request(req)


@app.get("/api/bundle-requests/{request_id}", dependencies=ADMIN)
async def get_bundle_request(request_id: str):
    return await get_request_service().get_bundle_request(request_id)


@app.patch("/api/bundle-requests/{request_id}", dependencies=ADMIN)
async def update_bundle_request(request_id: str, payload: dict):
    req = _parse(BundleRequestUpdate, payload)
    return await get_request_service().update_bundle_request(request_id, req)


# ============================================================================
# LISTING & DASHBOARD
# ============================================================================

@app.get("/api/jobs/search", dependencies=ADMIN)
async def search_jobs(
    status: Optional[str] = None,
    vendor_id: Optional[str] = None,
    service: Optional[str] = None,
    method: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    client_id: list[str] = Query(default=[]),
    search: Optional[str] = None,
    over_sla: bool = False,
    viewer_role: Optional[str] = None,
):
    """Combined, filtered listing of service and bundle requests, newest first."""
    flt = RequestFilter(
        status=status,
        vendor_id=vendor_id,
        service=service,
        method=method,
        date_from=date_from,
        date_to=date_to,
        client_ids=client_id,
        search=search,
        over_sla=over_sla,
    )
    items = await get_request_service().search_jobs(flt, viewer_role=viewer_role)
    return {"jobs": items, "total": len(items)}


@app.get("/api/admin/dashboard", dependencies=ADMIN)
async def admin_dashboard(
    preset: str = "this_month",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    return await get_request_service().dashboard(preset, custom_start=start, custom_end=end)


# ============================================================================
# AUTOMATION RULES & CAPACITIES
# ============================================================================

@app.get("/api/automation-rules", dependencies=ADMIN)
async def list_rules():
    return {"rules": await get_admin_service().list_rules()}


@app.post("/api/automation-rules", dependencies=ADMIN, status_code=201)
async def create_rule(payload: dict):
    req = _parse(RuleCreateRequest, payload)
    return await get_admin_service().create_rule(req)


@app.patch("/api/automation-rules/{rule_id}", dependencies=ADMIN)
async def update_rule(rule_id: str, payload: dict):
    req = _parse(RuleUpdateRequest, payload)
    return await get_admin_service().update_rule(rule_id, req)


@app.delete("/api/automation-rules/{rule_id}", dependencies=ADMIN)
async def delete_rule(rule_id: str):
    await get_admin_service().delete_rule(rule_id)
    return OkResponse(id=rule_id)


@app.get("/api/vendor-service-capacities", dependencies=ADMIN)
async def list_vendor_capacities(vendor_profile_id: Optional[str] = None, service_id: Optional[str] = None):
    items = await get_admin_service().list_vendor_capacities(
        vendor_profile_id=vendor_profile_id, service_id=service_id,
    )
    return {"capacities": items}


@app.post("/api/vendor-service-capacities", dependencies=ADMIN, status_code=201)
async def create_vendor_capacity(payload: dict):
    req = _parse(VendorCapacityCreateRequest, payload)
    return await get_admin_service().create_vendor_capacity(req)


@app.patch("/api/vendor-service-capacities/{capacity_id}", dependencies=ADMIN)
async def update_vendor_capacity(capacity_id: str, payload: dict):
    req = _parse(VendorCapacityUpdateRequest, payload)
    return await get_admin_service().update_vendor_capacity(capacity_id, req)


@app.delete("/api/vendor-service-capacities/{capacity_id}", dependencies=ADMIN)
async def delete_vendor_capacity(capacity_id: str):
    await get_admin_service().delete_vendor_capacity(capacity_id)
    return OkResponse(id=capacity_id)


@app.get("/api/designer-capacities", dependencies=ADMIN)
async def list_designer_capacities(user_id: Optional[str] = None, service_id: Optional[str] = None):
    items = await get_admin_service().list_designer_capacities(user_id=user_id, service_id=service_id)
    return {"capacities": items}


@app.post("/api/designer-capacities", dependencies=ADMIN, status_code=201)
async def create_designer_capacity(payload: dict):
    req = _parse(DesignerCapacityCreateRequest, payload)
    return await get_admin_service().create_designer_capacity(req)


@app.patch("/api/designer-capacities/{capacity_id}", dependencies=ADMIN)
async def update_designer_capacity(capacity_id: str, payload: dict):
    req = _parse(DesignerCapacityUpdateRequest, payload)
    return await get_admin_service().update_designer_capacity(capacity_id, req)


@app.delete("/api/designer-capacities/{capacity_id}", dependencies=ADMIN)
async def delete_designer_capacity(capacity_id: str):
    await get_admin_service().delete_designer_capacity(capacity_id)
    return OkResponse(id=capacity_id)


# ============================================================================
# COUPONS & REFUNDS
# ============================================================================

@app.get("/api/discount-coupons", dependencies=ADMIN)
async def list_coupons():
    return {"coupons": await get_admin_service().list_coupons()}


@app.post("/api/discount-coupons", dependencies=ADMIN, status_code=201)
async def create_coupon(payload: dict):
    req = _parse(CouponCreateRequest, payload)
    return await get_admin_service().create_coupon(req)


@app.post("/api/discount-coupons/validate", dependencies=ADMIN)
async def validate_coupon(payload: dict):
    """Check a code against a client, target and amount without redeeming it."""
    req = _parse(CouponValidateRequest, payload)
    result = await get_admin_service().validate_coupon(req)
    return result.model_dump()


@app.patch("/api/discount-coupons/{coupon_id}", dependencies=ADMIN)
async def update_coupon(coupon_id: str, payload: dict):
    req = _parse(CouponUpdateRequest, payload)
    return await get_admin_service().update_coupon(coupon_id, req)


@app.delete("/api/discount-coupons/{coupon_id}", dependencies=ADMIN)
async def delete_coupon(coupon_id: str):
    await get_admin_service().delete_coupon(coupon_id)
    return OkResponse(id=coupon_id)


@app.get("/api/refunds", dependencies=ADMIN)
async def list_refunds(client_id: Optional[str] = None, status: Optional[str] = None):
    return {"refunds": await get_admin_service().list_refunds(client_id=client_id, status=status)}


@app.get("/api/refunds/refundable", dependencies=ADMIN)
async def refundable_jobs(client_id: str):
    """Jobs of a client with their refundable balance."""
    return await get_admin_service().refundable_jobs(client_id)


@app.post("/api/refunds", dependencies=ADMIN, status_code=201)
async def create_refund(payload: dict):
    req = _parse(RefundCreateRequest, payload)
    return await get_admin_service().create_refund(req)


@app.post("/api/refunds/{refund_id}/process", dependencies=ADMIN)
async def process_refund(refund_id: str, payload: dict | None = None):
    """Send a pending refund to the payment provider."""
    req = _parse(RefundProcessRequest, payload or {})
    return await get_admin_service().process_refund(refund_id, processed_by=req.processed_by)


# ============================================================================
# PAYMENTS & PACK SUBSCRIPTIONS
# ============================================================================

@app.get("/api/payments", dependencies=ADMIN)
async def list_payments(
    client_company_id: Optional[str] = None,
    request_id: Optional[str] = None,
    status: Optional[str] = None,
):
    items = await get_billing_service().list_payments(
        client_company_id=client_company_id, request_id=request_id, status=status,
    )
    return {"payments": items}


@app.get("/api/payments/{payment_id}", dependencies=ADMIN)
async def get_payment(payment_id: str):
    return await get_billing_service().get_payment(payment_id)


@app.post("/api/payments/{payment_id}/retry", dependencies=ADMIN)
async def retry_payment(payment_id: str, payload: dict | None = None):
    """Charge a pending or failed card payment again."""
    req = _parse(PaymentActionRequest, payload or {})
    return await get_billing_service().retry_payment(payment_id, actor=req.actor)


@app.post("/api/payments/{payment_id}/mark-paid", dependencies=ADMIN)
async def mark_payment_paid(payment_id: str, payload: dict | None = None):
    req = _parse(PaymentActionRequest, payload or {})
    return await get_billing_service().mark_payment_paid(payment_id, actor=req.actor)


@app.get("/api/pack-subscriptions", dependencies=ADMIN)
async def list_pack_subscriptions(user_id: Optional[str] = None):
    return {"subscriptions": await get_billing_service().list_pack_subscriptions(user_id=user_id)}


@app.post("/api/pack-subscriptions", dependencies=ADMIN, status_code=201)
async def create_pack_subscription(payload: dict):
    req = _parse(PackSubscriptionCreateRequest, payload)
    return await get_billing_service().create_pack_subscription(req)


@app.get("/api/pack-subscriptions/usage", dependencies=ADMIN)
async def pack_usage(user_id: str):
    """Included vs used pack quantities for the client's current month."""
    return await get_billing_service().pack_usage(user_id)


@app.post("/api/admin/billing/pack-overage", dependencies=ADMIN)
async def run_pack_overage_billing(period: Optional[str] = None):
    """Charge pay-as-you-go companies for a month's pack overage jobs (default: last month)."""
    return await get_billing_service().run_pack_overage_billing(period)


# ============================================================================
# DIRECTORY
# ============================================================================

@app.get("/api/client-companies", dependencies=ADMIN)
async def list_client_companies():
    return {"companies": await get_admin_service().list_client_companies()}


@app.post("/api/client-companies", dependencies=ADMIN, status_code=201)
async def create_client_company(payload: dict):
    req = _parse(ClientCompanyCreateRequest, payload)
    return await get_admin_service().create_client_company(req)


@app.get("/api/client-companies/{company_id}", dependencies=ADMIN)
async def get_client_company(company_id: str):
    return await get_admin_service().get_client_company(company_id)


@app.patch("/api/client-companies/{company_id}", dependencies=ADMIN)
async def update_client_company(company_id: str, payload: dict):
    req = _parse(ClientCompanyUpdateRequest, payload)
    return await get_admin_service().update_client_company(company_id, req)


@app.delete("/api/client-companies/{company_id}", dependencies=ADMIN)
async def delete_client_company(company_id: str):
    await get_admin_service().delete_client_company(company_id)
    return OkResponse(id=company_id)


@app.get("/api/vendor-profiles", dependencies=ADMIN)
async def list_vendor_profiles(include_deleted: bool = False):
    return {"profiles": await get_admin_service().list_vendor_profiles(include_deleted=include_deleted)}


@app.post("/api/vendor-profiles", dependencies=ADMIN, status_code=201)
async def create_vendor_profile(payload: dict):
    req = _parse(VendorProfileCreateRequest, payload)
    return await get_admin_service().create_vendor_profile(req)


@app.get("/api/vendor-profiles/{profile_id}", dependencies=ADMIN)
async def get_vendor_profile(profile_id: str):
    return await get_admin_service().get_vendor_profile(profile_id)


@app.patch("/api/vendor-profiles/{profile_id}", dependencies=ADMIN)
async def update_vendor_profile(profile_id: str, payload: dict):
    req = _parse(VendorProfileUpdateRequest, payload)
    return await get_admin_service().update_vendor_profile(profile_id, req)


@app.delete("/api/vendor-profiles/{profile_id}", dependencies=ADMIN)
async def delete_vendor_profile(profile_id: str):
    await get_admin_service().delete_vendor_profile(profile_id)
    return OkResponse(id=profile_id)


# ============================================================================
# SETTINGS & NOTIFICATIONS
# ============================================================================

@app.get("/api/admin/priority-distribution", dependencies=ADMIN)
async def get_priority_distribution():
    return await get_admin_service().get_priority_distribution()


@app.put("/api/admin/priority-distribution", dependencies=ADMIN)
async def set_priority_distribution(payload: dict):
    req = _parse(PriorityDistributionModel, payload)
    return await get_admin_service().set_priority_distribution(req)


@app.get("/api/notifications", dependencies=ADMIN)
async def list_notifications(user_id: str, unread_only: bool = False):
    items = await get_request_service().list_notifications(user_id, unread_only=unread_only)
    return {"notifications": items}


@app.post("/api/notifications/{notification_id}/read", dependencies=ADMIN)
async def mark_notification_read(notification_id: str):
    await get_request_service().mark_notification_read(notification_id)
    return OkResponse(id=notification_id)


# ============================================================================
# FALLBACKS
# ============================================================================

@app.get("/", include_in_schema=False)
def root_public():
    return HTMLResponse(
        "<!doctype html><html><head><meta charset='utf-8'>"
        "<title>Tripod Ops</title></head><body>"
        "<h3>Tripod Ops</h3><p>Service is running.</p>"
        "</body></html>"
    )


@app.api_route(
    "/{path_name:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def catch_all(path_name: str):
    logger.warning(f"404 - Unknown route accessed: {path_name}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tripod.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
