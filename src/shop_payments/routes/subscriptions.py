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

"""Internal subscription management routes."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from shop_payments import dependencies
from shop_payments.models import RevokeSubscriptionRequest
from shop_payments.models import SubscriptionStatusResponse
from shop_payments.services.subscription_service import SubscriptionService

router = APIRouter(dependencies=[Depends(dependencies.verify_internal_secret)])


@router.post(
    "/guilds/{guild_id}/subscriptions/{subscription_id}/revoke",
    response_model=SubscriptionStatusResponse,
    operation_id="revoke_subscription",
)
async def revoke_subscription(
    guild_id: str = Path(...),
    subscription_id: str = Path(...),
    revoke_request: Optional[RevokeSubscriptionRequest] = Body(None),
    subscription_service: SubscriptionService = Depends(
        dependencies.get_subscription_service
    ),
) -> SubscriptionStatusResponse:
  """Revoke an active subscription and remove its role."""
  return await subscription_service.revoke(
      guild_id,
      subscription_id,
      revoke_request.revoked_by if revoke_request else None,
  )
