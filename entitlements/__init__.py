"""FastAPI 应用入口：权益解析、订阅对账与变更推送。"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlements.api import api_router
from entitlements.core.exceptions import register_exception_handlers
from entitlements.core.middleware import RequestIDMiddleware
from entitlements.log import logger as _loguru_logger  # noqa: F401  安装 loguru 拦截
from entitlements.repositories.subscription_repo import SubscriptionRepository
from entitlements.services.access_service import AccessService
from entitlements.services.polar_client import PolarClient
from entitlements.services.polar_webhooks import PolarWebhookHandler
from entitlements.services.subscription_events import SubscriptionEventBroker
from entitlements.services.subscription_reconciler import SubscriptionReconciler
from entitlements.services.supabase_admin import SupabaseAdminClient
from entitlements.settings.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    app.state.settings = settings

    supabase_admin = SupabaseAdminClient(settings)
    repository = SubscriptionRepository(
        supabase_admin,
        subscriptions_table=settings.subscriptions_table,
        profiles_table=settings.profiles_table,
    )
    broker = SubscriptionEventBroker()
    polar_client = PolarClient(settings)

    app.state.supabase_admin = supabase_admin
    app.state.subscription_repository = repository
    app.state.subscription_broker = broker
    app.state.polar_client = polar_client
    app.state.access_service = AccessService(repository, free_trial_days=settings.free_trial_days)
    app.state.subscription_reconciler = SubscriptionReconciler(
        repository,
        polar_client,
        broker,
        cache_window=timedelta(seconds=settings.server_verification_cache_seconds),
        free_trial_days=settings.free_trial_days,
    )
    app.state.webhook_handler = PolarWebhookHandler(repository, broker)

    if not polar_client.is_configured:
        logger.warning("POLAR_ACCESS_TOKEN not set; provider verification will fail with 502")
    logger.info("%s %s started", settings.app_name, settings.app_version)
    try:
        yield
    finally:
        await broker.close_all()
        logger.info("%s stopped", settings.app_name)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        description=settings.app_description,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
