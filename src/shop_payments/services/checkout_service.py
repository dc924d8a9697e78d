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

"""Checkout service for starting payments with a provider.

This module provides the `CheckoutService` class, which turns a pending
Payment into a provider-native checkout: a hosted page the buyer is
redirected to, or manual payment instructions.

Key responsibilities include:
- Resolving the order, shop item and provider configuration of a payment.
- Dispatching to the registered provider adapter.
- Recording the provider-issued transaction identifier and metadata on the
  payment, in a single write, only when the provider call succeeded.
"""

import logging

import httpx
from shop_payments import db
from shop_payments.enums import PaymentStatus
from shop_payments.exceptions import InvalidRequestError
from shop_payments.exceptions import PaymentStateError
from shop_payments.exceptions import ResourceNotFoundError
from shop_payments.models import CheckoutUser
from shop_payments.models import InitiateResult
from shop_payments.models import ProviderConfig
from shop_payments.providers import CheckoutRequest
from shop_payments.providers import get_provider
from shop_payments.services.provider_config_service import ProviderConfigStore
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class CheckoutService:
  """Service for initiating provider checkouts."""

  def __init__(
      self,
      session: AsyncSession,
      http_client: httpx.AsyncClient,
      config_store: ProviderConfigStore,
      base_url: str,
  ):
    self.session = session
    self.http_client = http_client
    self.config_store = config_store
    self.base_url = base_url.rstrip("/")

  async def initiate(
      self, provider_config: ProviderConfig, request: CheckoutRequest
  ) -> InitiateResult:
    """Creates the provider-side checkout for a pending payment.

    Callers must initiate a payment at most once; providers would create a
    second session otherwise.

    Args:
      provider_config: Credentials of the provider to use.
      request: The order, payment and buyer to check out.

    Returns:
      A redirect to the provider's hosted page, or manual instructions.

    Raises:
      ConfigurationError: If the provider's credentials are incomplete.
      ProviderAPIError: If the provider rejected the request or was
        unreachable. The payment is left untouched.
    """
    provider = get_provider(provider_config.provider, self.http_client)
    logger.info(
        "Initiating %s checkout for payment %s",
        provider.name,
        request.payment.id,
    )
    checkout = await provider.create_checkout(provider_config, request)

    if checkout.transaction_id or checkout.provider_data:
      await db.set_payment_transaction(
          self.session,
          request.payment,
          checkout.transaction_id,
          checkout.provider_data,
      )
      await self.session.commit()
      logger.info(
          "Payment %s started as %s transaction %s",
          request.payment.id,
          provider.name,
          checkout.transaction_id,
      )
    return checkout.result

  async def start_checkout(self, payment_id: str) -> InitiateResult:
    """Loads a pending payment and its order, then calls `initiate`."""
    payment = await db.get_payment(self.session, payment_id)
    if payment is None:
      raise ResourceNotFoundError(f"Payment {payment_id} not found")
    if payment.status != PaymentStatus.PENDING.value:
      raise PaymentStateError(
          f"Payment {payment_id} is {payment.status}, not pending"
      )
    if payment.transaction_id:
      raise PaymentStateError(
          f"Payment {payment_id} was already initiated"
      )

    order = await db.get_order(self.session, payment.order_id)
    if order is None:
      raise ResourceNotFoundError(f"Order {payment.order_id} not found")
    if not order.discord_user_id:
      raise InvalidRequestError(f"Order {order.id} has no buyer")

    shop_item = None
    if order.guild_id and order.shop_item_id:
      shop_item = await db.get_shop_item(
          self.session, order.guild_id, order.shop_item_id
      )
      if shop_item is None or not shop_item.enabled:
        raise ResourceNotFoundError(
            f"Shop item {order.shop_item_id} is not available"
        )

    provider_config = await self.config_store.resolve(
        payment.provider, order.guild_id
    )
    request = CheckoutRequest(
        order=order,
        payment=payment,
        amount_cents=payment.amount_cents,
        currency=payment.currency,
        guild_id=order.guild_id,
        tier=order.tier,
        billing_period=order.billing_period,
        user=CheckoutUser(
            discord_id=order.discord_user_id,
            email=order.buyer_email,
            username=order.buyer_username,
        ),
        base_url=self.base_url,
        shop_item=shop_item,
    )
    return await self.initiate(provider_config, request)
