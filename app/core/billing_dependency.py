"""
FastAPI dependencies exposing the billing services built at startup.

Services live on app.state (see app.main lifespan) so tests can swap in
fakes through app.dependency_overrides.
"""
from fastapi import Request

from app.core.plan_catalog import PlanCatalog
from app.services.billing_webhook_service import BillingWebhookService
from app.services.plan_state_machine import PlanStateMachine
from app.services.profile_cache import ProfileCache
from app.services.quota_ledger import QuotaLedger


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.catalog


def get_profile_cache(request: Request) -> ProfileCache:
    return request.app.state.profile_cache


def get_state_machine(request: Request) -> PlanStateMachine:
    return request.app.state.state_machine


def get_ledger(request: Request) -> QuotaLedger:
    return request.app.state.ledger


def get_webhook_service(request: Request) -> BillingWebhookService:
    return request.app.state.webhook_service
