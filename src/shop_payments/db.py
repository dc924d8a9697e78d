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

"""Database management and persistence layer for the guild shop payments service.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the service. It utilizes SQLAlchemy
with SQLite (via aiosqlite) by default.

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so that several
  webhook workers can share one database file.
- Declarative Models: Defines tables for orders, payments, shop items, codes,
  subscriptions, coupons, the audit log and the webhook idempotency ledger.
- Data Access Helpers: Asynchronous functions for the reads and the
  conditional writes the payment flow relies on. Every terminal transition is
  an `UPDATE ... WHERE status = <expected>` so that concurrent handlers cannot
  both win.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
import uuid

from shop_payments.enums import OrderStatus
from shop_payments.enums import PaymentStatus
from shop_payments.enums import SubscriptionStatus
from shop_payments.exceptions import DuplicateEventError
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import delete
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def utc_now() -> str:
  """Returns the current UTC time as a second-precision ISO string."""
  return datetime.datetime.now(datetime.timezone.utc).isoformat(
      timespec="seconds"
  )


def timestamp_to_iso(ts: int) -> str:
  """Converts a unix timestamp to the ISO format used by `utc_now`."""
  return datetime.datetime.fromtimestamp(
      int(ts), tz=datetime.timezone.utc
  ).isoformat(timespec="seconds")


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_url: str, **engine_kwargs: Any) -> None:
    """Initializes the database engine and creates tables."""
    self.engine = create_async_engine(database_url, echo=False, **engine_kwargs)

    if database_url.startswith("sqlite"):
      async with self.engine.connect() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class PaymentProviderConfig(Base):
  __tablename__ = "payment_providers"

  provider = Column(String, primary_key=True)
  display_name = Column(String)
  is_active = Column(Boolean, default=False)
  auto_verification = Column(Boolean, default=False)
  config = Column(JSON, default=dict)
  updated_at = Column(String, nullable=True)


class GuildPaymentConfig(Base):
  """Per-guild credentials, so each guild can sell with its own account."""

  __tablename__ = "guild_payment_configs"
  __table_args__ = (UniqueConstraint("guild_id", "provider"),)

  id = Column(Integer, primary_key=True, autoincrement=True)
  guild_id = Column(String, index=True)
  provider = Column(String)
  enabled = Column(Boolean, default=True)
  webhook_secret = Column(String, nullable=True)
  config = Column(JSON, default=dict)


class ShopSettings(Base):
  __tablename__ = "guild_shop_settings"

  guild_id = Column(String, primary_key=True)
  notification_channel_id = Column(String, nullable=True)


class ShopItem(Base):
  __tablename__ = "guild_shop_items"

  id = Column(String, primary_key=True)
  guild_id = Column(String, index=True)
  name = Column(String)
  description = Column(String, nullable=True)
  delivery_type = Column(String, default="role")
  billing_type = Column(String, default="one_time")
  billing_interval = Column(String, nullable=True)  # 'month' or 'year'
  discord_role_id = Column(String, nullable=True)
  price_amount_cents = Column(Integer)
  currency = Column(String, default="eur")
  enabled = Column(Boolean, default=True)


class Coupon(Base):
  __tablename__ = "guild_shop_coupons"

  id = Column(String, primary_key=True)
  guild_id = Column(String, index=True)
  code = Column(String)
  percent_off = Column(Integer, nullable=True)
  amount_off_cents = Column(Integer, nullable=True)
  redemption_count = Column(Integer, default=0)
  max_redemptions = Column(Integer, nullable=True)
  active = Column(Boolean, default=True)


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  order_number = Column(String)
  guild_id = Column(String, nullable=True)
  shop_item_id = Column(String, nullable=True)
  tier = Column(String, nullable=True)
  discord_user_id = Column(String, nullable=True)
  buyer_email = Column(String, nullable=True)
  buyer_username = Column(String, nullable=True)
  coupon_id = Column(String, nullable=True)
  billing_period = Column(String, nullable=True)
  status = Column(String, default=OrderStatus.PENDING.value)
  created_at = Column(String, default=utc_now)
  updated_at = Column(String, nullable=True)


class Payment(Base):
  __tablename__ = "payments"
  __table_args__ = (UniqueConstraint("provider", "transaction_id"),)

  id = Column(String, primary_key=True)
  order_id = Column(String, ForeignKey("orders.id"))
  provider = Column(String)
  amount_cents = Column(Integer)
  currency = Column(String)
  status = Column(String, default=PaymentStatus.PENDING.value)
  transaction_id = Column(String, nullable=True)
  # `metadata` is reserved by the declarative base.
  provider_data = Column("metadata", JSON, default=dict)
  verified_at = Column(String, nullable=True)
  verified_by = Column(String, nullable=True)
  notes = Column(String, nullable=True)
  created_at = Column(String, default=utc_now)
  updated_at = Column(String, nullable=True)


class ShopOrder(Base):
  __tablename__ = "guild_shop_orders"
  __table_args__ = (UniqueConstraint("provider", "transaction_id"),)

  id = Column(String, primary_key=True)
  guild_id = Column(String, index=True)
  shop_item_id = Column(String)
  discord_user_id = Column(String)
  amount_cents = Column(Integer, nullable=True)
  currency = Column(String, nullable=True)
  delivery_type = Column(String)
  provider = Column(String)
  transaction_id = Column(String)
  payment_id = Column(String, nullable=True)
  coupon_id = Column(String, nullable=True)
  created_at = Column(String, default=utc_now)


class ShopSubscription(Base):
  __tablename__ = "guild_shop_subscriptions"
  __table_args__ = (
      UniqueConstraint("guild_id", "shop_item_id", "discord_user_id"),
  )

  id = Column(String, primary_key=True)
  guild_id = Column(String, index=True)
  shop_item_id = Column(String)
  discord_user_id = Column(String)
  stripe_subscription_id = Column(String, nullable=True, index=True)
  stripe_customer_id = Column(String, nullable=True)
  status = Column(String, default=SubscriptionStatus.ACTIVE.value)
  current_period_end = Column(String, nullable=True)
  created_at = Column(String, default=utc_now)
  updated_at = Column(String, nullable=True)


class ShopCode(Base):
  __tablename__ = "guild_shop_codes"
  __table_args__ = (UniqueConstraint("provider", "transaction_id"),)

  id = Column(String, primary_key=True)
  guild_id = Column(String, index=True)
  shop_item_id = Column(String)
  code = Column(String, unique=True)
  source = Column(String, default="minted")  # 'minted' or 'prefilled'
  discord_role_id = Column(String, nullable=True)
  provider = Column(String)
  transaction_id = Column(String)
  buyer_discord_id = Column(String, nullable=True)
  redeemed_at = Column(String, nullable=True)
  created_at = Column(String, default=utc_now)


class ShopPrefilledCode(Base):
  __tablename__ = "guild_shop_prefilled_codes"

  id = Column(Integer, primary_key=True, autoincrement=True)
  guild_id = Column(String, index=True)
  shop_item_id = Column(String, index=True)
  code = Column(String)
  created_at = Column(String, default=utc_now)


class AuditLogEntry(Base):
  __tablename__ = "guild_shop_audit_log"

  id = Column(Integer, primary_key=True, autoincrement=True)
  guild_id = Column(String, nullable=True, index=True)
  action = Column(String)
  details = Column(JSON, nullable=True)
  created_at = Column(String, default=utc_now)


class ProcessedWebhookEvent(Base):
  __tablename__ = "processed_webhook_events"
  __table_args__ = (UniqueConstraint("provider", "event_key"),)

  id = Column(Integer, primary_key=True, autoincrement=True)
  provider = Column(String)
  event_key = Column(String)
  event_type = Column(String)
  received_at = Column(String, default=utc_now)


# --- Data Access Helpers ---


async def get_provider_config(
    session: AsyncSession, provider: str
) -> Optional[PaymentProviderConfig]:
  """Retrieves the platform-level configuration row for a provider."""
  return await session.get(PaymentProviderConfig, provider)


async def get_guild_payment_config(
    session: AsyncSession, guild_id: str, provider: str
) -> Optional[GuildPaymentConfig]:
  """Retrieves a guild's own credentials for a provider."""
  result = await session.execute(
      select(GuildPaymentConfig).where(
          GuildPaymentConfig.guild_id == guild_id,
          GuildPaymentConfig.provider == provider,
      )
  )
  return result.scalar_one_or_none()


async def get_shop_settings(
    session: AsyncSession, guild_id: str
) -> Optional[ShopSettings]:
  return await session.get(ShopSettings, guild_id)


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def get_payment(
    session: AsyncSession, payment_id: str
) -> Optional[Payment]:
  """Retrieves a payment by ID."""
  return await session.get(Payment, payment_id)


async def get_payment_by_transaction(
    session: AsyncSession, provider: str, transaction_id: str
) -> Optional[Payment]:
  """Retrieves a payment by its provider-assigned transaction ID."""
  result = await session.execute(
      select(Payment).where(
          Payment.provider == provider,
          Payment.transaction_id == transaction_id,
      )
  )
  return result.scalar_one_or_none()


def merge_provider_data(
    payment: Payment, provider_data: Dict[str, Any]
) -> Dict[str, Any]:
  """Returns the payment's provider metadata with `provider_data` merged in."""
  merged = dict(payment.provider_data or {})
  merged.update(provider_data)
  return merged


async def set_payment_transaction(
    session: AsyncSession,
    payment: Payment,
    transaction_id: Optional[str],
    provider_data: Dict[str, Any],
) -> None:
  """Records the provider transaction ID and metadata on a payment."""
  payment.provider_data = merge_provider_data(payment, provider_data)
  payment.transaction_id = transaction_id
  payment.updated_at = utc_now()


async def transition_payment(
    session: AsyncSession,
    payment_id: str,
    to_status: PaymentStatus,
    **fields: Any,
) -> bool:
  """Moves a pending payment to a terminal status.

  Args:
    session: The database session to use.
    payment_id: The payment to transition.
    to_status: The terminal status to set.
    **fields: Extra columns to write in the same statement.

  Returns:
    True if this call performed the transition, False if the payment was not
    pending anymore.
  """
  stmt = (
      update(Payment)
      .where(Payment.id == payment_id)
      .where(Payment.status == PaymentStatus.PENDING.value)
      .values(status=to_status.value, updated_at=utc_now(), **fields)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def set_order_status(
    session: AsyncSession, order_id: str, status: OrderStatus
) -> None:
  """Updates the status of an order."""
  await session.execute(
      update(Order)
      .where(Order.id == order_id)
      .values(status=status.value, updated_at=utc_now())
      .execution_options(synchronize_session=False)
  )


async def get_shop_item(
    session: AsyncSession, guild_id: str, item_id: str
) -> Optional[ShopItem]:
  """Retrieves a shop item scoped to its guild."""
  result = await session.execute(
      select(ShopItem).where(
          ShopItem.guild_id == guild_id, ShopItem.id == item_id
      )
  )
  return result.scalar_one_or_none()


async def get_coupon(session: AsyncSession, coupon_id: str) -> Optional[Coupon]:
  return await session.get(Coupon, coupon_id)


async def increment_coupon_redemptions(
    session: AsyncSession, coupon_id: str
) -> Optional[int]:
  """Increments a coupon's redemption counter (read, then write).

  Returns:
    The new redemption count, or None if the coupon does not exist.
  """
  coupon = await get_coupon(session, coupon_id)
  if not coupon:
    return None
  coupon.redemption_count = (coupon.redemption_count or 0) + 1
  return coupon.redemption_count


async def is_event_processed(
    session: AsyncSession, provider: str, event_key: str
) -> bool:
  """Checks the idempotency ledger for a provider event."""
  result = await session.execute(
      select(ProcessedWebhookEvent.id).where(
          ProcessedWebhookEvent.provider == provider,
          ProcessedWebhookEvent.event_key == event_key,
      )
  )
  return result.scalar_one_or_none() is not None


async def record_processed_event(
    session: AsyncSession, provider: str, event_key: str, event_type: str
) -> None:
  """Claims a provider event in the idempotency ledger.

  Raises:
    DuplicateEventError: If another handler already claimed the event. The
      session is rolled back before raising.
  """
  session.add(
      ProcessedWebhookEvent(
          provider=provider, event_key=event_key, event_type=event_type
      )
  )
  try:
    await session.flush()
  except IntegrityError as e:
    await session.rollback()
    raise DuplicateEventError(provider, event_key) from e


async def create_shop_order(
    session: AsyncSession,
    guild_id: str,
    shop_item_id: str,
    discord_user_id: str,
    delivery_type: str,
    provider: str,
    transaction_id: str,
    amount_cents: Optional[int] = None,
    currency: Optional[str] = None,
    payment_id: Optional[str] = None,
    coupon_id: Optional[str] = None,
) -> ShopOrder:
  """Adds a fulfilled-purchase row to the session."""
  shop_order = ShopOrder(
      id=str(uuid.uuid4()),
      guild_id=guild_id,
      shop_item_id=shop_item_id,
      discord_user_id=discord_user_id,
      amount_cents=amount_cents,
      currency=currency,
      delivery_type=delivery_type,
      provider=provider,
      transaction_id=transaction_id,
      payment_id=payment_id,
      coupon_id=coupon_id,
  )
  session.add(shop_order)
  return shop_order


async def get_subscription(
    session: AsyncSession,
    guild_id: str,
    shop_item_id: str,
    discord_user_id: str,
) -> Optional[ShopSubscription]:
  """Retrieves the subscription row for a (guild, item, user) triple."""
  result = await session.execute(
      select(ShopSubscription).where(
          ShopSubscription.guild_id == guild_id,
          ShopSubscription.shop_item_id == shop_item_id,
          ShopSubscription.discord_user_id == discord_user_id,
      )
  )
  return result.scalar_one_or_none()


async def get_subscription_by_id(
    session: AsyncSession, subscription_id: str
) -> Optional[ShopSubscription]:
  return await session.get(ShopSubscription, subscription_id)


async def get_subscription_by_stripe_id(
    session: AsyncSession,
    stripe_subscription_id: str,
    guild_id: Optional[str] = None,
) -> Optional[ShopSubscription]:
  """Retrieves a subscription by the provider's subscription ID."""
  stmt = select(ShopSubscription).where(
      ShopSubscription.stripe_subscription_id == stripe_subscription_id
  )
  if guild_id:
    stmt = stmt.where(ShopSubscription.guild_id == guild_id)
  result = await session.execute(stmt)
  return result.scalars().first()


async def upsert_subscription(
    session: AsyncSession,
    guild_id: str,
    shop_item_id: str,
    discord_user_id: str,
    stripe_subscription_id: Optional[str],
    stripe_customer_id: Optional[str],
    current_period_end: Optional[str],
) -> ShopSubscription:
  """Creates or reactivates the subscription row for a buyer.

  A re-subscription reuses the unique (guild, item, user) row and starts a new
  active lifecycle on it.
  """
  existing = await get_subscription(
      session, guild_id, shop_item_id, discord_user_id
  )
  if existing:
    existing.stripe_subscription_id = stripe_subscription_id
    existing.stripe_customer_id = stripe_customer_id
    existing.status = SubscriptionStatus.ACTIVE.value
    existing.current_period_end = current_period_end
    existing.updated_at = utc_now()
    return existing

  subscription = ShopSubscription(
      id=str(uuid.uuid4()),
      guild_id=guild_id,
      shop_item_id=shop_item_id,
      discord_user_id=discord_user_id,
      stripe_subscription_id=stripe_subscription_id,
      stripe_customer_id=stripe_customer_id,
      status=SubscriptionStatus.ACTIVE.value,
      current_period_end=current_period_end,
  )
  session.add(subscription)
  return subscription


async def update_subscription_period(
    session: AsyncSession, subscription_id: str, current_period_end: str
) -> bool:
  """Updates only the renewal date of a subscription."""
  result = await session.execute(
      update(ShopSubscription)
      .where(ShopSubscription.id == subscription_id)
      .values(current_period_end=current_period_end, updated_at=utc_now())
      .execution_options(synchronize_session=False)
  )
  return result.rowcount > 0


async def transition_subscription(
    session: AsyncSession,
    subscription_id: str,
    to_status: SubscriptionStatus,
) -> bool:
  """Moves an active subscription to a terminal status.

  Returns:
    True if this call performed the transition.
  """
  result = await session.execute(
      update(ShopSubscription)
      .where(ShopSubscription.id == subscription_id)
      .where(ShopSubscription.status == SubscriptionStatus.ACTIVE.value)
      .values(status=to_status.value, updated_at=utc_now())
      .execution_options(synchronize_session=False)
  )
  return result.rowcount > 0


async def get_lapsed_subscriptions(
    session: AsyncSession, now: str
) -> List[ShopSubscription]:
  """Retrieves active subscriptions whose period ended before `now`."""
  result = await session.execute(
      select(ShopSubscription).where(
          ShopSubscription.status == SubscriptionStatus.ACTIVE.value,
          ShopSubscription.current_period_end.is_not(None),
          ShopSubscription.current_period_end < now,
      )
  )
  return list(result.scalars().all())


async def code_exists(session: AsyncSession, code: str) -> bool:
  result = await session.execute(select(ShopCode.id).where(ShopCode.code == code))
  return result.scalar_one_or_none() is not None


async def create_shop_code(
    session: AsyncSession,
    guild_id: str,
    shop_item_id: str,
    code: str,
    provider: str,
    transaction_id: str,
    buyer_discord_id: Optional[str],
    discord_role_id: Optional[str] = None,
    source: str = "minted",
) -> ShopCode:
  """Adds an issued redemption code to the session."""
  shop_code = ShopCode(
      id=str(uuid.uuid4()),
      guild_id=guild_id,
      shop_item_id=shop_item_id,
      code=code,
      source=source,
      discord_role_id=discord_role_id,
      provider=provider,
      transaction_id=transaction_id,
      buyer_discord_id=buyer_discord_id,
  )
  session.add(shop_code)
  return shop_code


async def take_prefilled_code(
    session: AsyncSession, guild_id: str, shop_item_id: str
) -> Optional[str]:
  """Atomically removes one code from a guild item's pre-filled pool.

  The row is claimed by a conditional delete; if another handler deleted the
  candidate first, the next candidate is tried.

  Returns:
    The code string, or None if the pool is empty.
  """
  while True:
    result = await session.execute(
        select(ShopPrefilledCode)
        .where(
            ShopPrefilledCode.guild_id == guild_id,
            ShopPrefilledCode.shop_item_id == shop_item_id,
        )
        .order_by(ShopPrefilledCode.id)
        .limit(1)
    )
    candidate = result.scalar_one_or_none()
    if not candidate:
      return None

    code = candidate.code
    deleted = await session.execute(
        delete(ShopPrefilledCode)
        .where(ShopPrefilledCode.id == candidate.id)
        .execution_options(synchronize_session=False)
    )
    if deleted.rowcount > 0:
      return code


async def append_audit_entry(
    session: AsyncSession,
    guild_id: Optional[str],
    action: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
  """Appends an entry to the audit log. Entries are never updated."""
  session.add(
      AuditLogEntry(
          guild_id=guild_id,
          action=action,
          details=details,
          created_at=utc_now(),
      )
  )


async def list_audit_entries(
    session: AsyncSession,
    guild_id: Optional[str] = None,
    action: Optional[str] = None,
) -> List[AuditLogEntry]:
  """Lists audit entries in insertion order, optionally filtered."""
  stmt = select(AuditLogEntry).order_by(AuditLogEntry.id)
  if guild_id:
    stmt = stmt.where(AuditLogEntry.guild_id == guild_id)
  if action:
    stmt = stmt.where(AuditLogEntry.action == action)
  result = await session.execute(stmt)
  return list(result.scalars().all())
