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

"""Common interface implemented by every payment provider adapter.

A provider adapter knows how to do three things:
- create a checkout for a pending payment (`create_checkout`),
- check that an inbound webhook really came from the provider
  (`verify_webhook`), and
- translate the provider's webhook body into a `WebhookEvent`
  (`parse_webhook`).

Adapters are constructed per request around an injected `httpx.AsyncClient`
and receive their credentials on every call, so one process can serve guilds
that each bring their own account.
"""

import abc
import dataclasses
import json
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx
from shop_payments import db
from shop_payments.exceptions import ConfigurationError
from shop_payments.exceptions import InvalidRequestError
from shop_payments.exceptions import ProviderAPIError
from shop_payments.models import CheckoutUser
from shop_payments.models import InitiateResult
from shop_payments.models import ProviderConfig
from shop_payments.models import WebhookEvent

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class CheckoutRequest:
  """Everything an adapter needs to start a checkout."""

  order: db.Order
  payment: db.Payment
  amount_cents: int
  currency: str
  guild_id: Optional[str]
  tier: Optional[str]
  billing_period: Optional[str]
  user: CheckoutUser
  base_url: str
  shop_item: Optional[db.ShopItem] = None

  @property
  def amount_decimal(self) -> str:
    return f"{self.amount_cents / 100:.2f}"

  @property
  def description(self) -> str:
    if self.shop_item is not None:
      return self.shop_item.name
    return f"{self.tier or 'Premium'} subscription"

  def return_url(self, outcome: str, provider: str) -> str:
    return (
        f"{self.base_url.rstrip('/')}/checkout/{outcome}?provider={provider}"
        f"&paymentId={self.payment.id}&orderId={self.order.id}"
    )


@dataclasses.dataclass
class ProviderCheckout:
  """The outcome of a checkout call, before it is persisted."""

  result: InitiateResult
  transaction_id: Optional[str] = None
  provider_data: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class ProviderSubscription:
  """Authoritative renewal state fetched from the provider."""

  subscription_id: str
  customer_id: Optional[str]
  status: Optional[str]
  current_period_end: Optional[int]


class PaymentProvider(abc.ABC):
  """Base class for provider adapters."""

  name: str = ""
  required_credentials: Sequence[str] = ()

  def __init__(self, http_client: httpx.AsyncClient):
    self.http_client = http_client

  def check_credentials(self, config: ProviderConfig) -> Dict[str, Any]:
    """Returns the credentials, or raises if any required one is missing."""
    credentials = config.credentials or {}
    missing = [
        key
        for key in self.required_credentials
        if not str(credentials.get(key) or "").strip()
    ]
    if missing:
      raise ConfigurationError(
          f"{self.name} credentials are not configured: missing"
          f" {', '.join(missing)}"
      )
    return credentials

  @abc.abstractmethod
  async def create_checkout(
      self, config: ProviderConfig, request: CheckoutRequest
  ) -> ProviderCheckout:
    """Creates the provider-side transaction for a pending payment."""

  @abc.abstractmethod
  async def verify_webhook(
      self,
      raw_body: bytes,
      headers: Mapping[str, str],
      config: ProviderConfig,
      tolerance: int,
  ) -> bool:
    """Checks the authenticity of an inbound webhook body."""

  @abc.abstractmethod
  def parse_webhook(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookEvent:
    """Translates a verified webhook body into a `WebhookEvent`."""

  def webhook_secret(self, config: ProviderConfig) -> Optional[str]:
    """The secret inbound webhooks are signed with."""
    return config.webhook_secret

  async def fetch_subscription(
      self, config: ProviderConfig, subscription_id: str
  ) -> Optional[ProviderSubscription]:
    """Fetches a recurring subscription; only recurring providers have one."""
    del config, subscription_id  # Unused.
    return None

  async def capture(
      self, config: ProviderConfig, transaction_id: str
  ) -> Optional[WebhookEvent]:
    """Captures a buyer-approved transaction.

    Returns:
      The capture outcome as an event, or None if the transaction had already
      been captured.

    Raises:
      InvalidRequestError: The provider settles without a capture step.
    """
    del config, transaction_id  # Unused.
    raise InvalidRequestError(
        f"{self.name} payments settle without a capture step"
    )

  def _load_json(self, raw_body: bytes) -> Dict[str, Any]:
    try:
      payload = json.loads(raw_body)
    except ValueError as e:
      raise InvalidRequestError("Invalid JSON body") from e
    if not isinstance(payload, dict):
      raise InvalidRequestError("Webhook body must be a JSON object")
    return payload

  async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """Sends a request, mapping transport failures to ProviderAPIError."""
    try:
      return await self.http_client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
      logger.error("%s request to %s failed: %s", self.name, url, e)
      raise ProviderAPIError(self.name, f"request failed: {e}") from e

  def _json_or_error(self, response: httpx.Response) -> Dict[str, Any]:
    try:
      data = response.json()
    except ValueError as e:
      raise ProviderAPIError(
          self.name, f"unreadable response (HTTP {response.status_code})"
      ) from e
    if not isinstance(data, dict):
      raise ProviderAPIError(self.name, "unexpected response shape")
    return data
