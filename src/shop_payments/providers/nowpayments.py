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

"""NOWPayments invoice adapter."""

import logging
from typing import Mapping, Optional

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

API_BASE = "https://api.nowpayments.io/v1"

PAID_STATUSES = ("finished", "confirmed")
FAILED_STATUSES = ("expired", "failed")


class NowPaymentsProvider(PaymentProvider):
  """Creates hosted invoices and parses IPN callbacks."""

  name = "nowpayments"
  required_credentials = ("api_key",)

  async def create_checkout(
      self, config: ProviderConfig, request: CheckoutRequest
  ) -> ProviderCheckout:
    credentials = self.check_credentials(config)
    pay_currency = str(credentials.get("pay_currency") or "btc").lower()
    ipn_url = f"{request.base_url.rstrip('/')}/webhooks/{self.name}"
    if request.guild_id:
      ipn_url += f"?guild_id={request.guild_id}"

    response = await self._send(
        "POST",
        f"{API_BASE}/invoice",
        headers={"x-api-key": credentials["api_key"]},
        json={
            "price_amount": request.amount_cents / 100,
            "price_currency": request.currency.lower(),
            "pay_currency": pay_currency,
            "order_id": request.payment.id,
            "order_description": request.description,
            "ipn_callback_url": ipn_url,
            "success_url": request.return_url("success", self.name),
            "cancel_url": request.return_url("cancel", self.name),
        },
    )
    data = self._json_or_error(response)
    if response.is_error:
      logger.error("NOWPayments API error: %s", data)
      raise ProviderAPIError(
          self.name, data.get("message") or "Failed to create invoice"
      )

    invoice_id = data.get("id")
    invoice_url = data.get("invoice_url")
    if invoice_id is None or not invoice_url:
      raise ProviderAPIError(self.name, "invoice response incomplete")

    return ProviderCheckout(
        result=RedirectResult(url=invoice_url),
        transaction_id=str(invoice_id),
        provider_data={
            "nowpayments": {
                "invoiceId": invoice_id,
                "payAddress": data.get("pay_address"),
                "payAmount": data.get("pay_amount"),
                "payCurrency": pay_currency,
            }
        },
    )

  def webhook_secret(self, config: ProviderConfig) -> Optional[str]:
    return (config.credentials or {}).get("ipn_secret") or config.webhook_secret

  async def verify_webhook(
      self,
      raw_body: bytes,
      headers: Mapping[str, str],
      config: ProviderConfig,
      tolerance: int,
  ) -> bool:
    del tolerance  # IPN messages carry no timestamp.
    return signatures.verify_hmac_sha512(
        raw_body,
        signatures.header_value(headers, "x-nowpayments-sig"),
        self.webhook_secret(config),
    )

  def parse_webhook(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookEvent:
    payload = self._load_json(raw_body)
    payment_id = payload.get("order_id")
    if not payment_id:
      raise InvalidRequestError("Missing payment id")

    status = str(payload.get("payment_status") or "").lower()
    if status in PAID_STATUSES:
      kind = EventKind.PAYMENT_COMPLETED
    elif status in FAILED_STATUSES:
      kind = EventKind.PAYMENT_FAILED
    else:
      kind = EventKind.PAYMENT_PENDING

    invoice_id = payload.get("invoice_id")
    transaction_id = str(invoice_id) if invoice_id is not None else None
    provider_payment_id = payload.get("payment_id")
    return WebhookEvent(
        provider=self.name,
        event_type=f"payment.{status or 'unknown'}",
        kind=kind,
        event_id=str(provider_payment_id) if provider_payment_id else None,
        idempotency_key=transaction_id or str(payment_id),
        transaction_id=transaction_id,
        payment_id=str(payment_id),
        currency=(payload.get("price_currency") or "").lower() or None,
        provider_data={"nowpayments": payload},
    )
