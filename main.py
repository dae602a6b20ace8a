import argparse
import time
import schedule
import logging
import sys

from config.app_config import AUTO_RELEASE_POLL_SECONDS, FUNDING_SWEEP_MINUTES
from core.payments import create_payment_provider
from database.config import SessionLocal
from services.auto_release import AutoReleaseWorker
from services.webhook_reconciler import WebhookReconciler

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("escrow_worker.log")
    ]
)


def run_auto_release_cycle(worker: AutoReleaseWorker):
    try:
        summary = worker.run_due_jobs()
        logging.info(f"Auto-release cycle complete: {summary}")
    except Exception as e:
        logging.error(f"Error in auto-release cycle: {e}")


def run_funding_sweep(provider):
    db = SessionLocal()
    try:
        summary = WebhookReconciler(db, provider).sweep_pending_fundings()
        logging.info(f"Funding sweep complete: {summary}")
    except Exception as e:
        logging.error(f"Error in funding sweep: {e}")
    finally:
        db.close()


def start_scheduler(worker: AutoReleaseWorker, provider):
    logging.info(f"Starting Escrow Worker (auto-release every {AUTO_RELEASE_POLL_SECONDS}s)...")
    # Run once immediately
    run_auto_release_cycle(worker)
    run_funding_sweep(provider)

    schedule.every(AUTO_RELEASE_POLL_SECONDS).seconds.do(run_auto_release_cycle, worker)
    schedule.every(FUNDING_SWEEP_MINUTES).minutes.do(run_funding_sweep, provider)

    while True:
        schedule.run_pending()
        time.sleep(1)


def main():
    parser = argparse.ArgumentParser(description="FlowPay Escrow Worker")
    parser.add_argument("--mode", choices=["once", "schedule"], default="schedule", help="Run once or schedule")
    parser.add_argument("--provider", default=None, help="Override PAYMENT_PROVIDER")
    args = parser.parse_args()

    provider = create_payment_provider(args.provider)
    worker = AutoReleaseWorker(provider, session_factory=SessionLocal)

    if args.mode == "schedule":
        start_scheduler(worker, provider)
    else:
        run_auto_release_cycle(worker)
        run_funding_sweep(provider)


if __name__ == "__main__":
    main()
