# Services Module for FlowPay Escrow
# Contains the escrow workflow business logic

from services.errors import EscrowError, NotFound, Forbidden, InvalidState, ValidationFailed
from services.auto_release import ReleaseScheduler, DatabaseReleaseScheduler, AutoReleaseWorker
from services.milestone_service import MilestoneService, MilestoneResult, ReviewDecision, AutoReleaseOutcome
from services.escrow_service import EscrowService
from services.webhook_reconciler import WebhookReconciler

__all__ = [
    'EscrowError',
    'NotFound',
    'Forbidden',
    'InvalidState',
    'ValidationFailed',
    'ReleaseScheduler',
    'DatabaseReleaseScheduler',
    'AutoReleaseWorker',
    'MilestoneService',
    'MilestoneResult',
    'ReviewDecision',
    'AutoReleaseOutcome',
    'EscrowService',
    'WebhookReconciler',
]
