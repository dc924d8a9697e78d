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

"""Request, response and event models for the guild shop payments service.

The checkout result is a tagged union: a hosted-checkout redirect or a set of
manual payment instructions. Inbound webhooks from every provider are parsed
into a single `WebhookEvent` so the processor never looks at provider shapes.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel
from pydantic import Field
from shop_payments.enums import EventKind


class CheckoutUser(BaseModel):
  """The buyer starting a checkout."""

  discord_id: str
  email: Optional[str] = None
  username: Optional[str] = None


class RedirectResult(BaseModel):
  type: Literal["redirect"] = "redirect"
  url: str


class ManualInstruction(BaseModel):
  label: str
  value: str


class ManualResult(BaseModel):
  type: Literal["manual"] = "manual"
  title: str
  description: str
  instructions: List[ManualInstruction] = []


InitiateResult = Union[RedirectResult, ManualResult]


class ProviderConfig(BaseModel):
  """Credentials and flags resolved for one provider.

  `guild_id` is set when the credentials belong to a guild's own account
  rather than to the platform.
  """

  provider: str
  is_active: bool = False
  auto_verification: bool = False
  credentials: Dict[str, Any] = {}
  webhook_secret: Optional[str] = None
  guild_id: Optional[str] = None


class WebhookEvent(BaseModel):
  """A verified provider callback in provider-independent form."""

  provider: str
  event_type: str
  kind: EventKind
  event_id: Optional[str] = None
  # Provider session/transaction ID used as the idempotency key.
  idempotency_key: Optional[str] = None
  transaction_id: Optional[str] = None
  payment_id: Optional[str] = None
  order_id: Optional[str] = None
  guild_id: Optional[str] = None
  shop_item_id: Optional[str] = None
  discord_user_id: Optional[str] = None
  coupon_id: Optional[str] = None
  subscription_id: Optional[str] = None
  customer_id: Optional[str] = None
  current_period_end: Optional[int] = None
  amount_cents: Optional[int] = None
  currency: Optional[str] = None
  provider_data: Dict[str, Any] = {}


class WebhookAck(BaseModel):
  received: bool = True


class VerifyPaymentRequest(BaseModel):
  """Operator decision on a payment that needs manual verification."""

  action: Literal["confirm", "reject"]
  verified_by: Optional[str] = None
  notes: Optional[str] = None
  transaction_id: Optional[str] = Field(
      default=None, description="Transaction hash submitted by the payer."
  )


class PaymentStatusResponse(BaseModel):
  payment_id: str
  status: str
  order_status: Optional[str] = None


class RevokeSubscriptionRequest(BaseModel):
  revoked_by: Optional[str] = None


class SubscriptionStatusResponse(BaseModel):
  subscription_id: str
  status: str
  role_removed: bool = False
