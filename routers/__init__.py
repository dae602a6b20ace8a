# Escrow Routers Module
# Exports all modular API routers

from routers.deals import router as deals_router
from routers.milestones import router as milestones_router
from routers.payouts import router as payouts_router
from routers.admin import router as admin_router
from routers.webhooks import router as webhooks_router

__all__ = [
    'deals_router',
    'milestones_router',
    'payouts_router',
    'admin_router',
    'webhooks_router',
]
