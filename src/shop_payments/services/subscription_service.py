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

"""Operator-driven subscription endings.

Provider cancellations arrive as webhooks; this service covers the other two
ways a subscription ends: an operator revoking it, and the periodic sweep
that expires subscriptions whose paid period is over. Both reuse the
fulfillment engine's revocation, so the role is removed at most once.
"""

import logging
from typing import List, Optional

from shop_payments import db
from shop_payments.enums import SubscriptionStatus
from shop_payments.exceptions import InvalidRequestError
from shop_payments.exceptions import ResourceNotFoundError
from shop_payments.models import SubscriptionStatusResponse
from shop_payments.services.fulfillment_service import FulfillmentEngine
from shop_payments.services.hooks import PostCommitHooks
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SubscriptionService:

  def __init__(self, session: AsyncSession, fulfillment: FulfillmentEngine):
    self.session = session
    self.fulfillment = fulfillment

  async def revoke(
      self,
      guild_id: str,
      subscription_id: str,
      revoked_by: Optional[str] = None,
  ) -> SubscriptionStatusResponse:
    """Ends an active subscription now and removes its role."""
    subscription = await db.get_subscription_by_id(self.session, subscription_id)
    if subscription is None or subscription.guild_id != guild_id:
      raise ResourceNotFoundError(f"Subscription {subscription_id} not found")
    if subscription.status != SubscriptionStatus.ACTIVE.value:
      raise InvalidRequestError(
          f"Subscription {subscription_id} is not active"
      )

    hooks = PostCommitHooks()
    result = await self.fulfillment.revoke(
        subscription,
        SubscriptionStatus.EXPIRED,
        hooks,
        action="subscription_revoked_by_admin",
        details={"revoked_by": revoked_by},
    )
    await hooks.run()
    if not result.transitioned:
      raise InvalidRequestError(
          f"Subscription {subscription_id} is not active"
      )
    return SubscriptionStatusResponse(
        subscription_id=subscription_id,
        status=SubscriptionStatus.EXPIRED.value,
        role_removed=result.role_removed,
    )

  async def expire_lapsed(self, now: Optional[str] = None) -> List[str]:
    """Expires every active subscription whose period ended before `now`.

    Returns:
      The IDs of the subscriptions this call expired.
    """
    now = now or db.utc_now()
    lapsed = await db.get_lapsed_subscriptions(self.session, now)
    expired = []
    for subscription in lapsed:
      hooks = PostCommitHooks()
      result = await self.fulfillment.revoke(
          subscription,
          SubscriptionStatus.EXPIRED,
          hooks,
          action="subscription_expired",
          details={"current_period_end": subscription.current_period_end},
      )
      await hooks.run()
      if result.transitioned:
        expired.append(subscription.id)
    logger.info("Expired %d of %d lapsed subscriptions", len(expired),
                len(lapsed))
    return expired
