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

"""Fulfillment service for granting and revoking purchased entitlements.

This module encapsulates the delivery strategies of a shop item:
- `role`: the bot API adds the item's Discord role to the buyer.
- `role` billed as a subscription, or `subscription`: the buyer's
  subscription row is upserted with the provider's renewal date, then the
  role is added.
- `code`: a fresh redemption code is minted and bound to the purchase.
- `prefilled`: one code is drawn from the guild's pre-provisioned pool.
- `none`: nothing is granted.

Database writes happen inside the caller's transaction. Discord mutations are
returned in the `FulfillmentResult` and applied by `apply` once that
transaction has committed, so a bot API outage never rolls back a purchase.
"""

import dataclasses
import logging
import secrets
from typing import Optional

from shop_payments import db
from shop_payments.enums import BillingType
from shop_payments.enums import DeliveryType
from shop_payments.enums import SubscriptionStatus
from shop_payments.exceptions import FulfillmentError
from shop_payments.services.audit_service import AuditLogger
from shop_payments.services.bot_api import BotApiClient
from shop_payments.services.hooks import PostCommitHooks
from shop_payments.services.notification_service import NotificationSink
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4
MAX_MINT_ATTEMPTS = 5


def generate_code() -> str:
  """Returns a code like `K7QF-2MZX-P9TA` without ambiguous characters."""
  groups = [
      "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_GROUP_LENGTH))
      for _ in range(CODE_GROUPS)
  ]
  return "-".join(groups)


@dataclasses.dataclass
class Purchase:
  """A confirmed purchase, as far as it could be resolved."""

  provider: str
  transaction_id: str
  guild_id: Optional[str] = None
  shop_item_id: Optional[str] = None
  discord_user_id: Optional[str] = None
  coupon_id: Optional[str] = None
  payment_id: Optional[str] = None
  order_id: Optional[str] = None
  amount_cents: Optional[int] = None
  currency: Optional[str] = None
  subscription_id: Optional[str] = None
  customer_id: Optional[str] = None
  # ISO timestamp of the provider's canonical renewal date.
  current_period_end: Optional[str] = None

  @property
  def is_shop_purchase(self) -> bool:
    return bool(self.guild_id and self.shop_item_id and self.discord_user_id)


@dataclasses.dataclass
class FulfillmentResult:
  """What a fulfillment issued, plus the Discord change still to apply."""

  delivery_type: str
  role_to_grant: Optional[str] = None
  role_granted: bool = False
  code: Optional[str] = None
  subscription_id: Optional[str] = None
  pool_exhausted: bool = False


@dataclasses.dataclass
class RevocationResult:
  transitioned: bool
  role_removed: bool = False


def is_recurring(item: db.ShopItem) -> bool:
  return (
      item.delivery_type == DeliveryType.SUBSCRIPTION.value
      or item.billing_type == BillingType.SUBSCRIPTION.value
  )


class FulfillmentEngine:
  """Grants and revokes entitlements for shop purchases."""

  def __init__(
      self,
      session: AsyncSession,
      bot_api: BotApiClient,
      audit: AuditLogger,
      notifier: NotificationSink,
  ):
    self.session = session
    self.bot_api = bot_api
    self.audit = audit
    self.notifier = notifier

  async def fulfill(
      self,
      item: db.ShopItem,
      purchase: Purchase,
      hooks: PostCommitHooks,
  ) -> FulfillmentResult:
    """Performs the database side of a delivery.

    Args:
      item: The purchased shop item.
      purchase: The confirmed purchase; must be a shop purchase.
      hooks: Post-commit hooks that receive the audit entry and the
        announcement for this delivery.

    Returns:
      The result; `role_to_grant` is applied later by `apply`.
    """
    delivery_type = item.delivery_type or DeliveryType.ROLE.value
    guild_id = purchase.guild_id
    user_id = purchase.discord_user_id
    result = FulfillmentResult(delivery_type=delivery_type)
    details = {
        "shop_item_id": item.id,
        "discord_user_id": user_id,
        "provider": purchase.provider,
        "transaction_id": purchase.transaction_id,
        "delivery_type": delivery_type,
    }

    if delivery_type == DeliveryType.CODE.value:
      code = await self._mint_code(item, purchase)
      result.code = code.code
      details["code_id"] = code.id
      action = "code_issued"
    elif delivery_type == DeliveryType.PREFILLED.value:
      drawn = await db.take_prefilled_code(self.session, guild_id, item.id)
      if drawn is None:
        result.pool_exhausted = True
        logger.error(
            "Prefilled code pool empty for guild %s item %s; purchase %s/%s"
            " completed without a code",
            guild_id, item.id, purchase.provider, purchase.transaction_id,
        )
        action = "prefilled_pool_exhausted"
      else:
        code = await db.create_shop_code(
            self.session,
            guild_id=guild_id,
            shop_item_id=item.id,
            code=drawn,
            provider=purchase.provider,
            transaction_id=purchase.transaction_id,
            buyer_discord_id=user_id,
            discord_role_id=item.discord_role_id,
            source="prefilled",
        )
        result.code = drawn
        details["code_id"] = code.id
        action = "prefilled_code_issued"
    elif delivery_type == DeliveryType.NONE.value:
      action = "purchase_recorded"
    else:
      if is_recurring(item):
        subscription = await db.upsert_subscription(
            self.session,
            guild_id,
            item.id,
            user_id,
            stripe_subscription_id=purchase.subscription_id,
            stripe_customer_id=purchase.customer_id,
            current_period_end=purchase.current_period_end,
        )
        result.subscription_id = subscription.id
        details["subscription_id"] = subscription.id
        details["current_period_end"] = purchase.current_period_end
        action = "subscription_activated"
      else:
        action = "role_purchased"
      if item.discord_role_id:
        result.role_to_grant = item.discord_role_id
      else:
        logger.warning("Shop item %s has no role to grant", item.id)

    self.audit.queue(hooks, guild_id, action, details)
    self.notifier.queue(
        hooks, guild_id, f"<@{user_id}> purchased **{item.name}**."
    )
    return result

  async def apply(
      self, purchase: Purchase, result: FulfillmentResult
  ) -> FulfillmentResult:
    """Applies the Discord side of a committed fulfillment. Never raises."""
    if not result.role_to_grant:
      return result
    try:
      await self.bot_api.add_role(
          purchase.guild_id, purchase.discord_user_id, result.role_to_grant
      )
      result.role_granted = True
    except FulfillmentError as e:
      logger.error(
          "Failed to add role %s to user %s in guild %s (%s/%s): %s",
          result.role_to_grant,
          purchase.discord_user_id,
          purchase.guild_id,
          purchase.provider,
          purchase.transaction_id,
          e.message,
      )
    return result

  async def _mint_code(
      self, item: db.ShopItem, purchase: Purchase
  ) -> db.ShopCode:
    for _ in range(MAX_MINT_ATTEMPTS):
      candidate = generate_code()
      if not await db.code_exists(self.session, candidate):
        return await db.create_shop_code(
            self.session,
            guild_id=purchase.guild_id,
            shop_item_id=item.id,
            code=candidate,
            provider=purchase.provider,
            transaction_id=purchase.transaction_id,
            buyer_discord_id=purchase.discord_user_id,
            discord_role_id=item.discord_role_id,
        )
    raise FulfillmentError(f"Could not mint a unique code for item {item.id}")

  async def revoke(
      self,
      subscription: db.ShopSubscription,
      to_status: SubscriptionStatus,
      hooks: PostCommitHooks,
      action: str,
      details: Optional[dict] = None,
  ) -> RevocationResult:
    """Ends an active subscription and removes its role.

    The status transition is conditional on the row still being active and is
    committed before the role is removed, so repeated calls remove the role at
    most once. A failed removal is logged and left for manual follow-up.
    """
    transitioned = await db.transition_subscription(
        self.session, subscription.id, to_status
    )
    if not transitioned:
      await self.session.rollback()
      logger.info(
          "Subscription %s is not active; nothing to revoke", subscription.id
      )
      return RevocationResult(transitioned=False)
    await self.session.commit()

    result = RevocationResult(transitioned=True)
    item = await db.get_shop_item(
        self.session, subscription.guild_id, subscription.shop_item_id
    )
    role_id = item.discord_role_id if item else None
    if role_id:
      try:
        await self.bot_api.remove_role(
            subscription.guild_id, subscription.discord_user_id, role_id
        )
        result.role_removed = True
      except FulfillmentError as e:
        logger.error(
            "Failed to remove role %s from user %s in guild %s for"
            " subscription %s: %s",
            role_id,
            subscription.discord_user_id,
            subscription.guild_id,
            subscription.id,
            e.message,
        )
    else:
      logger.warning(
          "No role to remove for subscription %s (item %s)",
          subscription.id,
          subscription.shop_item_id,
      )

    audit_details = {
        "subscription_id": subscription.id,
        "shop_item_id": subscription.shop_item_id,
        "discord_user_id": subscription.discord_user_id,
        "status": to_status.value,
        "role_removed": result.role_removed,
    }
    audit_details.update(details or {})
    self.audit.queue(hooks, subscription.guild_id, action, audit_details)
    item_name = item.name if item else subscription.shop_item_id
    self.notifier.queue(
        hooks,
        subscription.guild_id,
        f"Subscription to **{item_name}** for <@{subscription.discord_user_id}>"
        f" ended ({to_status.value}).",
    )
    return result
