#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""FastAPI dependencies for the payments server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management.
- A per-request outbound HTTP client with a bounded timeout.
- Internal secret verification for operator endpoints.
- Service instantiation (checkout, webhooks, verification, subscriptions).
"""

import hmac
from typing import AsyncGenerator, Optional

from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
import httpx
from shop_payments import db
from shop_payments.config import ServerSettings
from shop_payments.services.audit_service import AuditLogger
from shop_payments.services.bot_api import BotApiClient
from shop_payments.services.checkout_service import CheckoutService
from shop_payments.services.fulfillment_service import FulfillmentEngine
from shop_payments.services.notification_service import NotificationSink
from shop_payments.services.provider_config_service import ProviderConfigStore
from shop_payments.services.subscription_service import SubscriptionService
from shop_payments.services.verification_service import VerificationService
from shop_payments.services.webhook_service import WebhookProcessor
from sqlalchemy.ext.asyncio import AsyncSession


def get_settings(request: Request) -> ServerSettings:
  """Dependency provider for the settings stored on the app."""
  return request.app.state.settings


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  async with db.manager.session_factory() as session:
    yield session


async def get_http_client(
    settings: ServerSettings = Depends(get_settings),
) -> AsyncGenerator[httpx.AsyncClient, None]:
  """Dependency provider for the outbound HTTP client."""
  async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
    yield client


async def verify_internal_secret(
    x_internal_secret: Optional[str] = Header(None, alias="X-Internal-Secret"),
    settings: ServerSettings = Depends(get_settings),
) -> None:
  """Verifies the shared secret of internal endpoints."""
  expected_secret = settings.internal_api_secret
  if not expected_secret:
    raise HTTPException(
        status_code=500, detail="Internal API secret not configured"
    )

  if not x_internal_secret or not hmac.compare_digest(
      x_internal_secret.encode("utf-8"), expected_secret.encode("utf-8")
  ):
    raise HTTPException(status_code=403, detail="Invalid internal secret")


def get_bot_api(
    http_client: httpx.AsyncClient = Depends(get_http_client),
    settings: ServerSettings = Depends(get_settings),
) -> BotApiClient:
  return BotApiClient(
      http_client, settings.bot_api_url, settings.internal_api_secret
  )


def get_config_store(
    session: AsyncSession = Depends(get_db),
) -> ProviderConfigStore:
  return ProviderConfigStore(session)


def get_audit_logger(session: AsyncSession = Depends(get_db)) -> AuditLogger:
  return AuditLogger(session)


def get_fulfillment_engine(
    session: AsyncSession = Depends(get_db),
    bot_api: BotApiClient = Depends(get_bot_api),
    audit: AuditLogger = Depends(get_audit_logger),
) -> FulfillmentEngine:
  """Dependency provider for FulfillmentEngine."""
  return FulfillmentEngine(
      session, bot_api, audit, NotificationSink(session, bot_api)
  )


def get_checkout_service(
    session: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    config_store: ProviderConfigStore = Depends(get_config_store),
    settings: ServerSettings = Depends(get_settings),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  return CheckoutService(session, http_client, config_store, settings.base_url)


def get_webhook_processor(
    session: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    settings: ServerSettings = Depends(get_settings),
    config_store: ProviderConfigStore = Depends(get_config_store),
    fulfillment: FulfillmentEngine = Depends(get_fulfillment_engine),
    audit: AuditLogger = Depends(get_audit_logger),
) -> WebhookProcessor:
  """Dependency provider for WebhookProcessor."""
  return WebhookProcessor(
      session, http_client, settings, config_store, fulfillment, audit
  )


def get_verification_service(
    session: AsyncSession = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> VerificationService:
  return VerificationService(session, processor)


def get_subscription_service(
    session: AsyncSession = Depends(get_db),
    fulfillment: FulfillmentEngine = Depends(get_fulfillment_engine),
) -> SubscriptionService:
  return SubscriptionService(session, fulfillment)
