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

"""Test helpers: a temporary database, a fake network and a wired app."""

import asyncio
import hashlib
import hmac
import json
import os
import shutil
import tempfile
import time
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from absl.testing import absltest
from fastapi.testclient import TestClient
import httpx
from shop_payments import db
from shop_payments import dependencies
from shop_payments.config import ServerSettings
from shop_payments.server import create_app
from shop_payments.services.audit_service import AuditLogger
from shop_payments.services.bot_api import BotApiClient
from shop_payments.services.fulfillment_service import FulfillmentEngine
from shop_payments.services.notification_service import NotificationSink
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

GUILD_ID = "guild-1"
OTHER_GUILD_ID = "guild-2"
USER_ID = "user-1"
ROLE_ID = "role-premium-id"
STRIPE_WEBHOOK_SECRET = "whsec_test"
INTERNAL_SECRET = "internal-secret"
BOT_API_URL = "http://bot.test/api"

ProviderHandler = Callable[[httpx.Request], httpx.Response]


class ShopTestCase(absltest.TestCase):
  """Base class with a temporary SQLite database and a mocked network.

  Outbound HTTP goes through `httpx.MockTransport`: calls to the bot API are
  recorded in `self.bot_calls` and answered with `self.bot_status`; every
  other call is passed to `self.provider_handler`.
  """

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.database_url = (
        f"sqlite+aiosqlite:///{os.path.join(self.test_dir, 'shop.db')}"
    )
    # NullPool: TestClient runs the app on its own event loop.
    self.engine = create_async_engine(
        self.database_url, echo=False, poolclass=NullPool
    )
    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async def init_schema() -> None:
      async with self.engine.begin() as conn:
        await conn.run_sync(db.Base.metadata.create_all)

    asyncio.run(init_schema())

    self.bot_calls: List[Dict[str, Any]] = []
    self.bot_status = 200
    self.provider_requests: List[httpx.Request] = []
    self.provider_handler: Optional[ProviderHandler] = None
    self.settings = ServerSettings(
        database_url=self.database_url,
        base_url="https://shop.example",
        bot_api_url=BOT_API_URL,
        internal_api_secret=INTERNAL_SECRET,
        http_timeout=5.0,
    )

  def tearDown(self) -> None:
    asyncio.run(self.engine.dispose())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  # --- Fake network ---

  def handle_http(self, request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if url.startswith(BOT_API_URL):
      body = json.loads(request.content) if request.content else None
      self.bot_calls.append({
          "method": request.method,
          "path": url[len(BOT_API_URL):],
          "json": body,
          "secret": request.headers.get("X-Internal-Secret"),
      })
      return httpx.Response(self.bot_status, json={"ok": self.bot_status < 400})
    self.provider_requests.append(request)
    if self.provider_handler is None:
      raise AssertionError(f"Unexpected provider call: {request.method} {url}")
    return self.provider_handler(request)

  def http_client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(self.handle_http))

  def bot_calls_for(self, method: str) -> List[Dict[str, Any]]:
    return [c for c in self.bot_calls if c["method"] == method]

  # --- Database helpers ---

  def seed(self, *rows: Any) -> None:
    async def add_all() -> None:
      async with self.session_factory() as session:
        session.add_all(rows)
        await session.commit()

    asyncio.run(add_all())

  def query(self, model: Any, **filters: Any) -> List[Any]:
    async def run_query() -> List[Any]:
      async with self.session_factory() as session:
        stmt = select(model)
        for name, value in filters.items():
          stmt = stmt.where(getattr(model, name) == value)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    return asyncio.run(run_query())

  def get(self, model: Any, key: Any) -> Any:
    async def fetch() -> Any:
      async with self.session_factory() as session:
        return await session.get(model, key)

    return asyncio.run(fetch())

  def make_engine(
      self, session: AsyncSession, http_client: httpx.AsyncClient
  ) -> FulfillmentEngine:
    bot_api = BotApiClient(http_client, BOT_API_URL, INTERNAL_SECRET)
    return FulfillmentEngine(
        session,
        bot_api,
        AuditLogger(session),
        NotificationSink(session, bot_api),
    )

  # --- Fixtures ---

  def seed_shop_item(
      self,
      item_id: str = "role-premium",
      delivery_type: str = "role",
      billing_type: str = "one_time",
      guild_id: str = GUILD_ID,
      **fields: Any,
  ) -> None:
    fields.setdefault("discord_role_id", ROLE_ID)
    self.seed(
        db.ShopItem(
            id=item_id,
            guild_id=guild_id,
            name=fields.pop("name", item_id.replace("-", " ").title()),
            delivery_type=delivery_type,
            billing_type=billing_type,
            price_amount_cents=fields.pop("price_amount_cents", 1000),
            currency=fields.pop("currency", "usd"),
            enabled=fields.pop("enabled", True),
            **fields,
        )
    )

  def seed_order(
      self,
      provider: str,
      payment_id: str = "pay-1",
      order_id: str = "order-1",
      shop_item_id: Optional[str] = "role-premium",
      guild_id: Optional[str] = GUILD_ID,
      transaction_id: Optional[str] = None,
      amount_cents: int = 1000,
      coupon_id: Optional[str] = None,
  ) -> None:
    self.seed(
        db.Order(
            id=order_id,
            order_number=f"ORD-{order_id}",
            guild_id=guild_id,
            shop_item_id=shop_item_id,
            discord_user_id=USER_ID,
            buyer_email="buyer@example.com",
            coupon_id=coupon_id,
            status="pending",
        ),
        db.Payment(
            id=payment_id,
            order_id=order_id,
            provider=provider,
            amount_cents=amount_cents,
            currency="usd",
            status="pending",
            transaction_id=transaction_id,
            provider_data={},
        ),
    )

  def seed_guild_stripe(self, guild_id: str = GUILD_ID, **config: Any) -> None:
    config.setdefault("secret_key", "sk_test_123")
    self.seed(
        db.GuildPaymentConfig(
            guild_id=guild_id,
            provider="stripe",
            enabled=True,
            webhook_secret=STRIPE_WEBHOOK_SECRET,
            config=config,
        )
    )

  def seed_platform_provider(
      self, provider: str, auto_verification: bool = True, **config: Any
  ) -> None:
    self.seed(
        db.PaymentProviderConfig(
            provider=provider,
            display_name=provider,
            is_active=True,
            auto_verification=auto_verification,
            config=config,
        )
    )


class AppTestCase(ShopTestCase):
  """Adds the FastAPI app with database and HTTP dependencies overridden."""

  def setUp(self) -> None:
    super().setUp()
    self.app = create_app(self.settings)

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
      async with self.session_factory() as session:
        yield session

    async def override_get_http_client() -> (
        AsyncGenerator[httpx.AsyncClient, None]
    ):
      async with self.http_client() as client:
        yield client

    self.app.dependency_overrides[dependencies.get_db] = override_get_db
    self.app.dependency_overrides[dependencies.get_http_client] = (
        override_get_http_client
    )
    self.client = TestClient(self.app)

  def tearDown(self) -> None:
    self.app.dependency_overrides.clear()
    super().tearDown()

  def post_stripe_event(
      self,
      event: Dict[str, Any],
      guild_id: Optional[str] = GUILD_ID,
      secret: str = STRIPE_WEBHOOK_SECRET,
      timestamp: Optional[int] = None,
  ) -> httpx.Response:
    raw_body = json.dumps(event).encode("utf-8")
    url = "/webhooks/stripe"
    if guild_id:
      url += f"?guild_id={guild_id}"
    return self.client.post(
        url,
        content=raw_body,
        headers={
            "Stripe-Signature": stripe_signature_header(
                secret, raw_body, timestamp
            ),
            "Content-Type": "application/json",
        },
    )


def stripe_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
  """Signs a body the way Stripe signs webhook deliveries."""
  signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
  return hmac.new(
      secret.encode("utf-8"), signed_payload, hashlib.sha256
  ).hexdigest()


def stripe_signature_header(
    secret: str, raw_body: bytes, timestamp: Optional[int] = None
) -> str:
  ts = int(time.time()) if timestamp is None else timestamp
  return f"t={ts},v1={stripe_signature(secret, ts, raw_body)}"


def stripe_session_event(
    session_id: str = "cs_test_1",
    event_type: str = "checkout.session.completed",
    metadata: Optional[Dict[str, str]] = None,
    **fields: Any,
) -> Dict[str, Any]:
  """Builds a `checkout.session.*` event body."""
  obj = {
      "id": session_id,
      "object": "checkout.session",
      "mode": "payment",
      "payment_status": "paid",
      "amount_total": 1000,
      "currency": "usd",
      "metadata": metadata
      if metadata is not None
      else {
          "guild_id": GUILD_ID,
          "shop_item_id": "role-premium",
          "discord_id": USER_ID,
      },
  }
  obj.update(fields)
  return {
      "id": f"evt_{session_id}_{event_type}",
      "type": event_type,
      "data": {"object": obj},
  }


def stripe_subscription_event(
    subscription_id: str,
    event_type: str,
    current_period_end: Optional[int] = None,
    event_id: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
  obj = {
      "id": subscription_id,
      "object": "subscription",
      "customer": "cus_1",
      "status": "active" if event_type.endswith("updated") else "canceled",
      "metadata": metadata or {},
  }
  if current_period_end is not None:
    obj["current_period_end"] = current_period_end
  return {
      "id": event_id or f"evt_{subscription_id}_{event_type}",
      "type": event_type,
      "data": {"object": obj},
  }
