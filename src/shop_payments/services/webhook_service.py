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

"""Webhook processing for payment providers.

This module provides the `WebhookProcessor`, which turns an authenticated
provider callback into state transitions on payments, orders and
subscriptions, and triggers fulfillment exactly once per provider
transaction.

Key properties:
- Signatures are checked over the raw body with the secret selected by the
  guild in the request URL, before anything is parsed.
- A completed purchase is claimed in the `processed_webhook_events` ledger
  first. A redelivery, or a concurrent handler losing the race on the unique
  key, becomes a `DuplicateEventError` and is acknowledged as a no-op.
- Payment, order, coupon, shop order and delivery rows are written in one
  transaction. Discord changes, audit entries and announcements run after the
  commit and can only be logged, never surfaced.
- Once authenticated and parseable, every event is acknowledged, so a
  fulfillment bug does not turn into a provider retry storm.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx
from shop_payments import db
from shop_payments.config import ServerSettings
from shop_payments.enums import EventKind
from shop_payments.enums import OrderStatus
from shop_payments.enums import PaymentStatus
from shop_payments.enums import SubscriptionStatus
from shop_payments.exceptions import DuplicateEventError
from shop_payments.exceptions import InvalidRequestError
from shop_payments.exceptions import PaymentStateError
from shop_payments.exceptions import ProviderAPIError
from shop_payments.exceptions import ResourceNotFoundError
from shop_payments.exceptions import ShopError
from shop_payments.exceptions import SignatureVerificationError
from shop_payments.exceptions import TenantMismatchError
from shop_payments.models import PaymentStatusResponse
from shop_payments.models import ProviderConfig
from shop_payments.models import WebhookAck
from shop_payments.models import WebhookEvent
from shop_payments.providers import PaymentProvider
from shop_payments.providers import get_provider
from shop_payments.services.audit_service import AuditLogger
from shop_payments.services.fulfillment_service import FulfillmentEngine
from shop_payments.services.fulfillment_service import Purchase
from shop_payments.services.hooks import PostCommitHooks
from shop_payments.services.provider_config_service import ProviderConfigStore
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Providers whose webhook URL must name the guild whose secret signs it.
GUILD_SCOPED_PROVIDERS = ("stripe",)


class WebhookProcessor:
  """Verifies, classifies and applies provider webhooks."""

  def __init__(
      self,
      session: AsyncSession,
      http_client: httpx.AsyncClient,
      settings: ServerSettings,
      config_store: ProviderConfigStore,
      fulfillment: FulfillmentEngine,
      audit: AuditLogger,
  ):
    self.session = session
    self.http_client = http_client
    self.settings = settings
    self.config_store = config_store
    self.fulfillment = fulfillment
    self.audit = audit
    self.hooks = PostCommitHooks()

  async def handle(
      self,
      provider_name: str,
      raw_body: bytes,
      headers: Mapping[str, str],
      guild_id: Optional[str],
  ) -> WebhookAck:
    """Entry point for `POST /webhooks/{provider}`.

    Raises:
      InvalidRequestError: Unknown provider, missing guild_id, or a body
        that cannot be parsed.
      ConfigurationError: No secret is configured for the destination.
      SignatureVerificationError: The signature does not match.
      TenantMismatchError: Signed metadata names another guild.
    """
    provider = get_provider(provider_name, self.http_client)
    if provider_name in GUILD_SCOPED_PROVIDERS and not guild_id:
      raise InvalidRequestError(
          "Missing guild_id query. Use .../webhooks/"
          f"{provider_name}?guild_id=YOUR_GUILD_ID"
      )

    config = await self.config_store.resolve_for_webhook(provider_name, guild_id)
    try:
      verified = await provider.verify_webhook(
          raw_body, headers, config, self.settings.webhook_tolerance
      )
    except ProviderAPIError as e:
      logger.error("Could not verify %s webhook: %s", provider_name, e.message)
      verified = False
    if not verified:
      logger.warning(
          "Rejected %s webhook with invalid signature (guild %s)",
          provider_name,
          guild_id,
      )
      raise SignatureVerificationError()

    event = provider.parse_webhook(raw_body, headers)
    await self.process(provider, config, event, guild_id)
    return WebhookAck()

  async def process(
      self,
      provider: PaymentProvider,
      config: ProviderConfig,
      event: WebhookEvent,
      guild_id: Optional[str],
  ) -> None:
    """Applies a verified event. Returns normally unless the request is bad.

    Raises:
      InvalidRequestError: The event cannot be tied to a transaction.
      TenantMismatchError: Signed metadata names another guild.
      ProviderAPIError: Capturing an approved payment failed; the provider
        should redeliver.
    """
    logger.info(
        "Processing %s event %s (%s)",
        event.provider,
        event.event_type,
        event.kind.value,
    )
    try:
      await self._dispatch(provider, config, event, guild_id)
    except DuplicateEventError as e:
      logger.info("Duplicate delivery ignored: %s", e.message)
    except (InvalidRequestError, TenantMismatchError, ProviderAPIError):
      raise
    except ShopError as e:
      await self.session.rollback()
      self.hooks.clear()
      logger.error(
          "Failed to process %s event %s: %s",
          event.provider,
          event.event_type,
          e.message,
      )
    await self.hooks.run()

  async def _dispatch(
      self,
      provider: PaymentProvider,
      config: ProviderConfig,
      event: WebhookEvent,
      guild_id: Optional[str],
  ) -> None:
    if event.kind == EventKind.PAYMENT_APPROVED:
      captured = await self._capture(provider, config, event)
      if captured is None:
        return
      event = captured

    if event.kind == EventKind.PAYMENT_COMPLETED:
      purchase = await self._resolve_purchase(event)
      self._check_tenant(purchase.guild_id, guild_id, event)
      await self._handle_completed(provider, config, event, purchase)
    elif event.kind == EventKind.PAYMENT_FAILED:
      purchase = await self._resolve_purchase(event)
      self._check_tenant(purchase.guild_id, guild_id, event)
      await self.fail_payment(purchase, event.event_type, event.provider_data)
    elif event.kind == EventKind.PAYMENT_PENDING:
      await self._record_notice(event, "pending_notice")
    elif event.kind == EventKind.SUBSCRIPTION_UPDATED:
      self._check_tenant(event.guild_id, guild_id, event)
      await self._handle_subscription_updated(event, guild_id)
    elif event.kind == EventKind.SUBSCRIPTION_DELETED:
      self._check_tenant(event.guild_id, guild_id, event)
      await self._handle_subscription_deleted(event, guild_id)
    else:
      logger.info("Ignoring %s event %s", event.provider, event.event_type)

  async def _capture(
      self,
      provider: PaymentProvider,
      config: ProviderConfig,
      event: WebhookEvent,
  ) -> Optional[WebhookEvent]:
    """Captures a buyer-approved transaction and returns the outcome."""
    key = event.idempotency_key or event.transaction_id
    if not key:
      raise InvalidRequestError("Approval carries no transaction identifier")
    if await db.is_event_processed(self.session, event.provider, key):
      logger.info("%s transaction %s already processed", event.provider, key)
      return None

    captured = await provider.capture(config, key)
    if captured is None:
      return None
    captured.payment_id = captured.payment_id or event.payment_id
    logger.info(
        "Captured %s transaction %s: %s",
        event.provider,
        key,
        captured.kind.value,
    )
    return captured

  async def confirm_payment(self, payment_id: str) -> PaymentStatusResponse:
    """Captures a payment after the buyer returns from approving it.

    The capture outcome goes through the same path as a webhook, so a capture
    notification arriving later is a duplicate.

    Raises:
      ResourceNotFoundError: Unknown payment.
      PaymentStateError: The payment is no longer pending.
      InvalidRequestError: The provider has no capture step, or the payment
        was never started.
    """
    payment = await db.get_payment(self.session, payment_id)
    if payment is None:
      raise ResourceNotFoundError(f"Payment {payment_id} not found")
    if payment.status != PaymentStatus.PENDING.value:
      raise PaymentStateError(
          f"Payment {payment_id} is already {payment.status}"
      )
    if not payment.transaction_id:
      raise InvalidRequestError(f"Payment {payment_id} has not been started")

    order = await db.get_order(self.session, payment.order_id)
    guild_id = order.guild_id if order else None
    provider = get_provider(payment.provider, self.http_client)
    config = await self.config_store.resolve(payment.provider, guild_id)
    event = WebhookEvent(
        provider=payment.provider,
        event_type="buyer_return",
        kind=EventKind.PAYMENT_APPROVED,
        idempotency_key=payment.transaction_id,
        transaction_id=payment.transaction_id,
        payment_id=payment.id,
    )
    await self.process(provider, config, event, guild_id)

    await self.session.refresh(payment)
    if order is not None:
      await self.session.refresh(order)
    return PaymentStatusResponse(
        payment_id=payment.id,
        status=payment.status,
        order_status=order.status if order else None,
    )

  def _check_tenant(
      self,
      signed_guild_id: Optional[str],
      url_guild_id: Optional[str],
      event: WebhookEvent,
  ) -> None:
    if signed_guild_id and url_guild_id and signed_guild_id != url_guild_id:
      logger.warning(
          "SECURITY: %s event %s for guild %s delivered to guild %s endpoint;"
          " rejected",
          event.provider,
          event.idempotency_key,
          signed_guild_id,
          url_guild_id,
      )
      raise TenantMismatchError()

  async def _find_payment(self, event: WebhookEvent) -> Optional[db.Payment]:
    payment = None
    if event.payment_id:
      payment = await db.get_payment(self.session, event.payment_id)
    if payment is None and event.transaction_id:
      payment = await db.get_payment_by_transaction(
          self.session, event.provider, event.transaction_id
      )
    return payment

  async def _resolve_purchase(self, event: WebhookEvent) -> Purchase:
    """Combines signed event metadata with the stored order.

    Metadata signed by the provider wins; the Payment and Order rows fill in
    what a provider cannot carry (crypto IPNs only echo the payment id).
    """
    purchase = Purchase(
        provider=event.provider,
        transaction_id=event.transaction_id or event.idempotency_key or "",
        guild_id=event.guild_id,
        shop_item_id=event.shop_item_id,
        discord_user_id=event.discord_user_id,
        coupon_id=event.coupon_id,
        payment_id=event.payment_id,
        order_id=event.order_id,
        amount_cents=event.amount_cents,
        currency=event.currency,
        subscription_id=event.subscription_id,
        customer_id=event.customer_id,
    )
    payment = await self._find_payment(event)
    if payment is None:
      logger.warning(
          "No payment row for %s transaction %s (payment id %s)",
          event.provider,
          event.transaction_id,
          event.payment_id,
      )
      return purchase

    purchase.payment_id = payment.id
    purchase.order_id = purchase.order_id or payment.order_id
    if purchase.amount_cents is None:
      purchase.amount_cents = payment.amount_cents
    purchase.currency = purchase.currency or payment.currency
    if not purchase.transaction_id:
      purchase.transaction_id = payment.transaction_id or payment.id

    order = await db.get_order(self.session, payment.order_id)
    if order is not None:
      purchase.guild_id = purchase.guild_id or order.guild_id
      purchase.shop_item_id = purchase.shop_item_id or order.shop_item_id
      purchase.discord_user_id = (
          purchase.discord_user_id or order.discord_user_id
      )
      purchase.coupon_id = purchase.coupon_id or order.coupon_id
    return purchase

  async def _handle_completed(
      self,
      provider: PaymentProvider,
      config: ProviderConfig,
      event: WebhookEvent,
      purchase: Purchase,
  ) -> None:
    key = event.idempotency_key or purchase.transaction_id
    if not key:
      raise InvalidRequestError("Event carries no transaction identifier")

    if await db.is_event_processed(self.session, event.provider, key):
      logger.info("%s transaction %s already processed", event.provider, key)
      return

    if not config.auto_verification and purchase.payment_id:
      await self._record_notice(event, "completion_notice", purchase.payment_id)
      self.audit.queue(
          self.hooks,
          purchase.guild_id,
          "payment_awaiting_verification",
          {"payment_id": purchase.payment_id, "provider": event.provider},
      )
      return

    await self._resolve_period_end(provider, config, purchase)
    await self.complete_purchase(
        purchase,
        event_key=key,
        event_type=event.event_type,
        provider_data=event.provider_data,
    )

  async def _resolve_period_end(
      self,
      provider: PaymentProvider,
      config: ProviderConfig,
      purchase: Purchase,
  ) -> None:
    """Reads the renewal date from the provider's subscription object."""
    if not purchase.subscription_id or purchase.current_period_end:
      return
    try:
      subscription = await provider.fetch_subscription(
          config, purchase.subscription_id
      )
    except ShopError as e:
      logger.error(
          "Could not fetch subscription %s: %s",
          purchase.subscription_id,
          e.message,
      )
      return
    if subscription is None:
      return
    purchase.customer_id = purchase.customer_id or subscription.customer_id
    if subscription.current_period_end:
      purchase.current_period_end = db.timestamp_to_iso(
          subscription.current_period_end
      )

  async def complete_purchase(
      self,
      purchase: Purchase,
      event_key: str,
      event_type: str,
      provider_data: Optional[Dict[str, Any]] = None,
      **payment_fields: Any,
  ) -> bool:
    """Runs the completed-payment transaction, then fulfillment side effects.

    Args:
      purchase: The resolved purchase.
      event_key: Idempotency key claimed in the processed-events ledger.
      event_type: Provider event type, stored with the ledger entry.
      provider_data: Provider details merged into the payment metadata.
      **payment_fields: Extra payment columns (e.g. `verified_by`). They are
        written by the same conditional update that completes the payment.

    Returns:
      True if this call completed the purchase.

    Raises:
      DuplicateEventError: If the key was claimed by another delivery.
    """
    await db.record_processed_event(
        self.session, purchase.provider, event_key, event_type
    )

    if purchase.payment_id:
      payment = await db.get_payment(self.session, purchase.payment_id)
      if payment is not None:
        payment_fields.setdefault(
            "transaction_id",
            payment.transaction_id or purchase.transaction_id or None,
        )
        if provider_data:
          payment_fields["provider_data"] = db.merge_provider_data(
              payment, provider_data
          )
        payment_fields.setdefault("verified_at", db.utc_now())
        payment_fields.setdefault("verified_by", f"webhook:{purchase.provider}")
        completed = await db.transition_payment(
            self.session,
            payment.id,
            PaymentStatus.COMPLETED,
            **payment_fields,
        )
        if not completed:
          logger.warning(
              "Payment %s is no longer pending; not fulfilling %s again",
              payment.id,
              event_key,
          )
          await self.session.commit()
          return False
        await db.set_order_status(
            self.session, payment.order_id, OrderStatus.PAID
        )

    if purchase.coupon_id:
      count = await db.increment_coupon_redemptions(
          self.session, purchase.coupon_id
      )
      if count is None:
        logger.warning("Coupon %s not found", purchase.coupon_id)

    result = None
    if purchase.is_shop_purchase:
      item = await db.get_shop_item(
          self.session, purchase.guild_id, purchase.shop_item_id
      )
      if item is None:
        logger.error(
            "Shop item %s not found in guild %s for %s transaction %s",
            purchase.shop_item_id,
            purchase.guild_id,
            purchase.provider,
            purchase.transaction_id,
        )
      else:
        await db.create_shop_order(
            self.session,
            guild_id=purchase.guild_id,
            shop_item_id=item.id,
            discord_user_id=purchase.discord_user_id,
            delivery_type=item.delivery_type,
            provider=purchase.provider,
            transaction_id=purchase.transaction_id,
            amount_cents=purchase.amount_cents,
            currency=purchase.currency,
            payment_id=purchase.payment_id,
            coupon_id=purchase.coupon_id,
        )
        result = await self.fulfillment.fulfill(item, purchase, self.hooks)
        if result.pool_exhausted:
          logger.error(
              "Buyer %s paid for item %s but no code was issued",
              purchase.discord_user_id,
              item.id,
          )
    else:
      logger.info(
          "Completed %s transaction %s has no shop item to deliver",
          purchase.provider,
          purchase.transaction_id,
      )

    try:
      await self.session.commit()
    except IntegrityError as e:
      await self.session.rollback()
      self.hooks.clear()
      raise DuplicateEventError(purchase.provider, event_key) from e

    if result is not None:
      await self.fulfillment.apply(purchase, result)
    return True

  async def fail_payment(
      self,
      purchase: Purchase,
      reason: str,
      provider_data: Optional[Dict[str, Any]] = None,
      **payment_fields: Any,
  ) -> bool:
    """Moves a pending payment to failed and its order with it."""
    if not purchase.payment_id:
      logger.warning(
          "Failed %s transaction %s matches no payment; skipping",
          purchase.provider,
          purchase.transaction_id,
      )
      return False
    payment = await db.get_payment(self.session, purchase.payment_id)
    if payment is None:
      return False
    if provider_data:
      payment_fields["provider_data"] = db.merge_provider_data(
          payment, provider_data
      )
    failed = await db.transition_payment(
        self.session, payment.id, PaymentStatus.FAILED, **payment_fields
    )
    if not failed:
      await self.session.rollback()
      logger.info("Payment %s already terminal; ignoring %s", payment.id, reason)
      return False
    await db.set_order_status(self.session, payment.order_id, OrderStatus.FAILED)
    await self.session.commit()
    self.audit.queue(
        self.hooks,
        purchase.guild_id,
        "payment_failed",
        {"payment_id": payment.id, "provider": purchase.provider,
         "reason": reason},
    )
    return True

  async def _record_notice(
      self,
      event: WebhookEvent,
      label: str,
      payment_id: Optional[str] = None,
  ) -> None:
    """Stores a provider notice on the payment without changing its status."""
    payment = None
    if payment_id:
      payment = await db.get_payment(self.session, payment_id)
    else:
      payment = await self._find_payment(event)
    if payment is None:
      logger.info(
          "%s %s for unknown payment; skipping", event.provider, event.event_type
      )
      return
    await db.set_payment_transaction(
        self.session,
        payment,
        payment.transaction_id,
        {label: {"event": event.event_type, "data": event.provider_data}},
    )
    await self.session.commit()

  async def _handle_subscription_updated(
      self, event: WebhookEvent, guild_id: Optional[str]
  ) -> None:
    if not event.subscription_id:
      raise InvalidRequestError("Subscription event without id")
    subscription = await db.get_subscription_by_stripe_id(
        self.session, event.subscription_id, guild_id
    )
    if subscription is None:
      logger.info(
          "Subscription %s not known yet; skipping update",
          event.subscription_id,
      )
      return
    if not event.current_period_end:
      logger.info("Subscription %s update has no period end", subscription.id)
      return
    await db.update_subscription_period(
        self.session,
        subscription.id,
        db.timestamp_to_iso(event.current_period_end),
    )
    await self.session.commit()

  async def _handle_subscription_deleted(
      self, event: WebhookEvent, guild_id: Optional[str]
  ) -> None:
    if not event.subscription_id:
      raise InvalidRequestError("Subscription event without id")
    subscription = await db.get_subscription_by_stripe_id(
        self.session, event.subscription_id, guild_id
    )
    if subscription is None:
      logger.info(
          "Subscription %s not found; nothing to cancel", event.subscription_id
      )
      return
    await self.fulfillment.revoke(
        subscription,
        SubscriptionStatus.CANCELLED,
        self.hooks,
        action="subscription_cancelled",
        details={"stripe_subscription_id": event.subscription_id},
    )
