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


"""Stripe Checkout adapter.

Sessions are created through a `stripe.StripeClient` built per call with the
guild's (or platform's) secret key, so tenants never share a client.
Organization keys may target a connected account; the account is passed as
the request's Stripe context.

Purchase metadata is attached to the session and, for subscriptions, to the
subscription as well, so that later `customer.subscription.*` events can be
tied back to the guild, item and buyer.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx
import stripe
from shop_payments import signatures
from shop_payments.enums import BillingType
from shop_payments.enums import DeliveryType
from shop_payments.enums import EventKind
from shop_payments.exceptions import ConfigurationError
from shop_payments.exceptions import InvalidRequestError
from shop_payments.exceptions import ProviderAPIError
from shop_payments.models import ProviderConfig
from shop_payments.models import RedirectResult
from shop_payments.models import WebhookEvent
from shop_payments.providers.base import CheckoutRequest
from shop_payments.providers.base import PaymentProvider
from shop_payments.providers.base import ProviderCheckout
from shop_payments.providers.base import ProviderSubscription

logger = logging.getLogger(__name__)

ACCOUNT_ID_PREFIX = "acct_"

PAYMENT_METHOD_TYPES = ("card", "paypal", "bancontact", "ideal", "eps", "blik")

_METADATA_KEYS = (
    "order_id",
    "payment_id",
    "guild_id",
    "shop_item_id",
    "discord_id",
    "coupon_id",
    "billing_period",
)


class _AsyncHttpxClient(stripe.HTTPClient):
  """Sends SDK requests through the request-scoped `httpx.AsyncClient`."""

  name = "httpx"

  def __init__(self, http_client: httpx.AsyncClient):
    super().__init__()
    self._http_client = http_client

  async def request_async(self, method, url, headers, post_data=None):
    try:
      response = await self._http_client.request(
          method, url, headers=headers, content=post_data
      )
    except httpx.HTTPError as e:
      raise stripe.APIConnectionError(f"Request to Stripe failed: {e}") from e
    return response.content, response.status_code, response.headers


def _billing_interval(request: CheckoutRequest) -> Optional[str]:
  item = request.shop_item
  if item is not None:
    is_recurring = (
        item.billing_type == BillingType.SUBSCRIPTION.value
        or item.delivery_type == DeliveryType.SUBSCRIPTION.value
    )
    if is_recurring:
      return item.billing_interval or "month"
    return None
  if request.billing_period:
    return "year" if request.billing_period == "yearly" else "month"
  return None


def _period_end(data: Mapping[str, Any]) -> Optional[int]:
  period_end = data.get("current_period_end")
  if period_end is None:
    # Newer API versions report the period per subscription item.
    items = (data.get("items") or {}).get("data") or []
    if items:
      period_end = items[0].get("current_period_end")
  return int(period_end) if period_end else None


class StripeProvider(PaymentProvider):
  """Creates Checkout Sessions and parses Stripe events."""

  name = "stripe"
  required_credentials = ("secret_key",)

  def _client(self, credentials: Dict[str, Any]) -> stripe.StripeClient:
    return stripe.StripeClient(
        credentials["secret_key"],
        http_client=_AsyncHttpxClient(self.http_client),
        max_network_retries=0,
    )

  def _request_options(self, credentials: Dict[str, Any]) -> Dict[str, Any]:
    account_id = str(credentials.get("account_id") or "").strip()
    if not account_id:
      return {}
    if not account_id.startswith(ACCOUNT_ID_PREFIX):
      raise ConfigurationError(
          f'Stripe Account ID must start with "{ACCOUNT_ID_PREFIX}"'
      )
    return {"stripe_context": f"account_id={account_id}"}

  def _metadata(self, request: CheckoutRequest) -> Dict[str, str]:
    values = {
        "order_id": request.order.id,
        "payment_id": request.payment.id,
        "guild_id": request.guild_id,
        "shop_item_id": request.shop_item.id if request.shop_item else None,
        "discord_id": request.user.discord_id,
        "coupon_id": request.order.coupon_id,
        "billing_period": request.billing_period,
    }
    return {k: str(values[k]) for k in _METADATA_KEYS if values[k]}

  def _session_params(self, request: CheckoutRequest) -> Dict[str, Any]:
    interval = _billing_interval(request)
    price_data: Dict[str, Any] = {
        "currency": request.currency.lower(),
        "unit_amount": request.amount_cents,
        "product_data": {"name": request.description},
    }
    metadata = self._metadata(request)
    success_url = request.return_url("success", self.name)
    params: Dict[str, Any] = {
        "payment_method_types": list(PAYMENT_METHOD_TYPES),
        "mode": "subscription" if interval else "payment",
        "success_url": success_url + "&session_id={CHECKOUT_SESSION_ID}",
        "cancel_url": request.return_url("cancel", self.name),
        "client_reference_id": request.payment.id,
        "billing_address_collection": "auto",
        "line_items": [{"quantity": 1, "price_data": price_data}],
        "metadata": metadata,
    }
    if interval:
      # Only cards support recurring charges on every account.
      params["payment_method_types"] = ["card"]
      price_data["recurring"] = {"interval": interval}
      params["subscription_data"] = {"metadata": metadata}
    if request.user.email:
      params["customer_email"] = request.user.email
    return params

  async def create_checkout(
      self, config: ProviderConfig, request: CheckoutRequest
  ) -> ProviderCheckout:
    credentials = self.check_credentials(config)
    options = self._request_options(credentials)

    client = self._client(credentials)
    try:
      session = await client.v1.checkout.sessions.create_async(
          params=self._session_params(request), options=options
      )
    except stripe.StripeError as e:
      message = e.user_message or str(e) or "Failed to create Stripe session"
      logger.error("Stripe session error for payment %s: %s",
                   request.payment.id, message)
      raise ProviderAPIError(self.name, message) from e

    session_id = getattr(session, "id", None)
    url = getattr(session, "url", None)
    if not session_id or not url:
      raise ProviderAPIError(self.name, "session response missing id or url")

    return ProviderCheckout(
        result=RedirectResult(url=url),
        transaction_id=session_id,
        provider_data={"stripe": {"sessionId": session_id}},
    )

  async def verify_webhook(
      self,
      raw_body: bytes,
      headers: Mapping[str, str],
      config: ProviderConfig,
      tolerance: int,
  ) -> bool:
    signature = signatures.header_value(
        headers, "stripe-signature", "x-signature"
    )
    return signatures.verify_stripe_signature(
        raw_body, signature, self.webhook_secret(config), tolerance=tolerance
    )

  async def fetch_subscription(
      self, config: ProviderConfig, subscription_id: str
  ) -> Optional[ProviderSubscription]:
    """Retrieves the canonical subscription to read its renewal date."""
    credentials = self.check_credentials(config)
    options = self._request_options(credentials)
    client = self._client(credentials)
    try:
      subscription = await client.v1.subscriptions.retrieve_async(
          subscription_id, options=options
      )
    except stripe.StripeError as e:
      raise ProviderAPIError(self.name, e.user_message or str(e)) from e

    data = subscription.to_dict()
    return ProviderSubscription(
        subscription_id=data.get("id") or subscription_id,
        customer_id=data.get("customer"),
        status=data.get("status"),
        current_period_end=_period_end(data),
    )

  def parse_webhook(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookEvent:
    payload = self._load_json(raw_body)
    event_type = payload.get("type")
    if not event_type:
      raise InvalidRequestError("Missing event type")
    obj = (payload.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    event = WebhookEvent(
        provider=self.name,
        event_type=event_type,
        kind=EventKind.IGNORED,
        event_id=payload.get("id"),
        guild_id=metadata.get("guild_id"),
        shop_item_id=metadata.get("shop_item_id"),
        discord_user_id=metadata.get("discord_id"),
        coupon_id=metadata.get("coupon_id"),
        order_id=metadata.get("order_id"),
        payment_id=metadata.get("payment_id") or obj.get("client_reference_id"),
        provider_data={"stripe": {"event": event_type, "objectId": obj.get("id")}},
    )

    if event_type.startswith("checkout.session."):
      event.transaction_id = obj.get("id")
      event.idempotency_key = obj.get("id")
      event.subscription_id = obj.get("subscription")
      event.customer_id = obj.get("customer")
      event.amount_cents = obj.get("amount_total")
      event.currency = obj.get("currency")
      if event_type == "checkout.session.completed":
        paid = obj.get("payment_status") == "paid"
        if paid or obj.get("mode") == "subscription":
          event.kind = EventKind.PAYMENT_COMPLETED
        else:
          # Delayed methods settle with async_payment_succeeded later.
          event.kind = EventKind.PAYMENT_PENDING
      elif event_type == "checkout.session.async_payment_succeeded":
        event.kind = EventKind.PAYMENT_COMPLETED
      elif event_type in (
          "checkout.session.async_payment_failed",
          "checkout.session.expired",
      ):
        event.kind = EventKind.PAYMENT_FAILED
    elif event_type in (
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ):
      event.subscription_id = obj.get("id")
      event.customer_id = obj.get("customer")
      event.idempotency_key = payload.get("id")
      event.current_period_end = _period_end(obj)
      if event_type.endswith("updated"):
        event.kind = EventKind.SUBSCRIPTION_UPDATED
      else:
        event.kind = EventKind.SUBSCRIPTION_DELETED

    return event
