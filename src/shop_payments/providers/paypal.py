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

"""PayPal Orders v2 adapter."""

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx
from shop_payments import signatures
from shop_payments.enums import EventKind
from shop_payments.exceptions import InvalidRequestError
from shop_payments.exceptions import ProviderAPIError
from shop_payments.models import ProviderConfig
from shop_payments.models import RedirectResult
from shop_payments.models import WebhookEvent
from shop_payments.providers.base import CheckoutRequest
from shop_payments.providers.base import PaymentProvider
from shop_payments.providers.base import ProviderCheckout

logger = logging.getLogger(__name__)

LIVE_API_BASE = "https://api-m.paypal.com"
SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"

APPROVED_EVENTS = ("CHECKOUT.ORDER.APPROVED",)
COMPLETED_EVENTS = ("PAYMENT.CAPTURE.COMPLETED",)
FAILED_EVENTS = (
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
    "CHECKOUT.ORDER.VOIDED",
)


def api_base(credentials: Dict[str, Any]) -> str:
  if credentials.get("environment") == "live":
    return LIVE_API_BASE
  return SANDBOX_API_BASE


class PayPalProvider(PaymentProvider):
  """Creates PayPal orders and checks webhooks through the verify API."""

  name = "paypal"
  required_credentials = ("client_id", "client_secret")

  async def _access_token(self, credentials: Dict[str, Any]) -> str:
    response = await self._send(
        "POST",
        f"{api_base(credentials)}/v1/oauth2/token",
        auth=httpx.BasicAuth(
            credentials["client_id"], credentials["client_secret"]
        ),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        content="grant_type=client_credentials",
    )
    if response.is_error:
      raise ProviderAPIError(self.name, "Failed to authenticate with PayPal")
    token = self._json_or_error(response).get("access_token")
    if not token:
      raise ProviderAPIError(self.name, "token response missing access_token")
    return token

  async def create_checkout(
      self, config: ProviderConfig, request: CheckoutRequest
  ) -> ProviderCheckout:
    credentials = self.check_credentials(config)
    token = await self._access_token(credentials)

    body = {
        "intent": "CAPTURE",
        "purchase_units": [{
            "reference_id": request.order.id,
            "custom_id": request.payment.id,
            "description": request.description,
            "amount": {
                "currency_code": request.currency.upper(),
                "value": request.amount_decimal,
            },
        }],
        "application_context": {
            "user_action": "PAY_NOW",
            "return_url": request.return_url("success", self.name),
            "cancel_url": request.return_url("cancel", self.name),
        },
    }
    response = await self._send(
        "POST",
        f"{api_base(credentials)}/v2/checkout/orders",
        headers={"Authorization": f"Bearer {token}"},
        json=body,
    )
    data = self._json_or_error(response)
    if response.is_error:
      logger.error("PayPal order creation failed: %s", data)
      raise ProviderAPIError(
          self.name, data.get("message") or "Failed to create PayPal order"
      )

    approve = next(
        (l for l in data.get("links") or [] if l.get("rel") == "approve"), None
    )
    if not approve or not data.get("id"):
      raise ProviderAPIError(self.name, "PayPal approval URL not found")

    return ProviderCheckout(
        result=RedirectResult(url=approve["href"]),
        transaction_id=data["id"],
        provider_data={
            "paypal": {
                "environment": credentials.get("environment") or "sandbox",
                "orderId": data["id"],
            }
        },
    )

  async def verify_webhook(
      self,
      raw_body: bytes,
      headers: Mapping[str, str],
      config: ProviderConfig,
      tolerance: int,
  ) -> bool:
    """Asks PayPal to verify the transmission signature.

    PayPal signs with a certificate chain rather than a shared secret, so the
    check is delegated to `/v1/notifications/verify-webhook-signature` using
    the webhook id configured for the guild.
    """
    del tolerance  # PayPal enforces its own replay window.
    credentials = config.credentials or {}
    webhook_id = credentials.get("webhook_id")
    if not webhook_id or not credentials.get("client_id"):
      return False

    transmission = {
        "auth_algo": signatures.header_value(headers, "paypal-auth-algo"),
        "cert_url": signatures.header_value(headers, "paypal-cert-url"),
        "transmission_id": signatures.header_value(
            headers, "paypal-transmission-id"
        ),
        "transmission_sig": signatures.header_value(
            headers, "paypal-transmission-sig"
        ),
        "transmission_time": signatures.header_value(
            headers, "paypal-transmission-time"
        ),
    }
    if not all(transmission.values()):
      return False

    try:
      event = json.loads(raw_body)
    except ValueError:
      return False

    token = await self._access_token(credentials)
    response = await self._send(
        "POST",
        f"{api_base(credentials)}/v1/notifications/verify-webhook-signature",
        headers={"Authorization": f"Bearer {token}"},
        json=dict(transmission, webhook_id=webhook_id, webhook_event=event),
    )
    if response.is_error:
      logger.warning("PayPal signature verification call failed: HTTP %s",
                     response.status_code)
      return False
    return self._json_or_error(response).get("verification_status") == "SUCCESS"

  async def capture(
      self, config: ProviderConfig, transaction_id: str
  ) -> Optional[WebhookEvent]:
    """Captures an approved order. PayPal moves no money before this call."""
    credentials = self.check_credentials(config)
    token = await self._access_token(credentials)
    response = await self._send(
        "POST",
        f"{api_base(credentials)}/v2/checkout/orders/{transaction_id}/capture",
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        },
    )
    data = self._json_or_error(response)
    if response.is_error:
      issues = [d.get("issue") for d in data.get("details") or []]
      if "ORDER_ALREADY_CAPTURED" in issues:
        logger.info("PayPal order %s was already captured", transaction_id)
        return None
      logger.error("PayPal capture of %s failed: %s", transaction_id, data)
      raise ProviderAPIError(
          self.name, data.get("message") or "Failed to capture PayPal order"
      )

    units = data.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or [{}]
    capture = captures[0]
    status = capture.get("status") or data.get("status")
    if status == "COMPLETED":
      kind = EventKind.PAYMENT_COMPLETED
    elif status in ("DECLINED", "FAILED", "VOIDED"):
      kind = EventKind.PAYMENT_FAILED
    else:
      kind = EventKind.PAYMENT_PENDING

    order_id = data.get("id") or transaction_id
    amount = capture.get("amount") or {}
    return WebhookEvent(
        provider=self.name,
        event_type="CHECKOUT.ORDER.CAPTURED",
        kind=kind,
        idempotency_key=order_id,
        transaction_id=order_id,
        payment_id=capture.get("custom_id") or units[0].get("custom_id"),
        amount_cents=_amount_cents(amount),
        currency=(amount.get("currency_code") or "").lower() or None,
        provider_data={
            "paypal": {
                "event": "capture",
                "captureId": capture.get("id"),
                "status": status,
            }
        },
    )

  def parse_webhook(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookEvent:
    payload = self._load_json(raw_body)
    event_type = payload.get("event_type")
    if not event_type:
      raise InvalidRequestError("Missing event_type")
    resource = payload.get("resource") or {}
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    paypal_order_id = related.get("order_id") or resource.get("id")
    amount = resource.get("amount") or {}
    # Order resources carry the payment id per purchase unit.
    units = resource.get("purchase_units") or [{}]
    payment_id = resource.get("custom_id") or units[0].get("custom_id")

    kind = EventKind.IGNORED
    if event_type in APPROVED_EVENTS:
      kind = EventKind.PAYMENT_APPROVED
    elif event_type in COMPLETED_EVENTS:
      kind = EventKind.PAYMENT_COMPLETED
    elif event_type in FAILED_EVENTS:
      kind = EventKind.PAYMENT_FAILED

    return WebhookEvent(
        provider=self.name,
        event_type=event_type,
        kind=kind,
        event_id=payload.get("id"),
        idempotency_key=paypal_order_id,
        transaction_id=paypal_order_id,
        payment_id=payment_id,
        amount_cents=_amount_cents(amount),
        currency=(amount.get("currency_code") or "").lower() or None,
        provider_data={
            "paypal": {
                "event": event_type,
                "captureId": resource.get("id"),
                "status": resource.get("status"),
            }
        },
    )


def _amount_cents(amount: Dict[str, Any]) -> Optional[int]:
  if not amount.get("value"):
    return None
  return int(round(float(amount["value"]) * 100))
