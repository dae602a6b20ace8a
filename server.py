# FastAPI Server for FlowPay Escrow
# Mounts the escrow routers, owns the payments provider instance and,
# optionally, runs the auto-release scheduler in-process.

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import logging
import sys

from config.app_config import (
    AUTO_RELEASE_IN_PROCESS, AUTO_RELEASE_POLL_SECONDS, FUNDING_SWEEP_MINUTES
)
from core.payments import PaymentsProvider, create_payment_provider
from database.config import SessionLocal, init_db
from routers import deals_router, milestones_router, payouts_router, admin_router, webhooks_router

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def start_background_jobs(app: FastAPI):
    """Poll for due auto-releases and sweep unconfirmed fundings inside this process."""
    from apscheduler.schedulers.background import BackgroundScheduler
    from services.auto_release import AutoReleaseWorker
    from services.webhook_reconciler import WebhookReconciler

    provider = app.state.payments_provider
    session_factory = app.state.session_factory
    worker = AutoReleaseWorker(provider, session_factory=session_factory)

    def scheduled_auto_release():
        try:
            worker.run_due_jobs()
        except Exception as e:
            logger.error(f"Scheduled auto-release run failed: {e}")

    def scheduled_funding_sweep():
        db = session_factory()
        try:
            WebhookReconciler(db, provider).sweep_pending_fundings()
        except Exception as e:
            logger.error(f"Scheduled funding sweep failed: {e}")
        finally:
            db.close()

    scheduler = BackgroundScheduler()
    scheduler.add_job(scheduled_auto_release, 'interval', seconds=AUTO_RELEASE_POLL_SECONDS, max_instances=1)
    scheduler.add_job(scheduled_funding_sweep, 'interval', minutes=FUNDING_SWEEP_MINUTES, max_instances=1)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(f"Scheduler started: auto-release every {AUTO_RELEASE_POLL_SECONDS}s, funding sweep every {FUNDING_SWEEP_MINUTES}m")


def create_app(
    provider: Optional[PaymentsProvider] = None,
    session_factory=None,
    run_scheduler: bool = AUTO_RELEASE_IN_PROCESS
) -> FastAPI:
    app = FastAPI(
        title="FlowPay Escrow API",
        description="Milestone escrow between brands and creators",
        version="1.0.0"
    )

    # The provider is chosen once here and injected into every request's services
    app.state.payments_provider = provider or create_payment_provider()
    app.state.session_factory = session_factory or SessionLocal
    app.state.scheduler = None

    @app.on_event("startup")
    def startup_event():
        init_db(bind=app.state.session_factory.kw.get("bind"))
        logger.info(f"Payments provider: {app.state.payments_provider.name}")
        if run_scheduler:
            start_background_jobs(app)

    @app.on_event("shutdown")
    def shutdown_event():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)

    # CORS Setup - Allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Required when using "*"
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # ESCROW ROUTERS (v2 API)
    # ========================================================================
    app.include_router(deals_router, prefix="/api/v2")
    app.include_router(milestones_router, prefix="/api/v2")
    app.include_router(payouts_router, prefix="/api/v2")
    app.include_router(admin_router, prefix="/api/v2")
    app.include_router(webhooks_router, prefix="/api/v2")

    @app.get("/")
    def root():
        return {
            "name": "FlowPay Escrow API",
            "version": "1.0.0",
            "status": "running"
        }

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "provider": app.state.payments_provider.name}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
