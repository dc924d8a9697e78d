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

"""CoinPayments adapter.

Both directions are HMAC-SHA512 signed: API calls with the private key over
the form body, IPN callbacks with the IPN secret over the raw callback body.
"""

import logging
from typing import Mapping, Optional
import urllib.parse

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

API_URL = "https://www.coinpayments.net/api.php"

# IPN status codes: >= 100 complete, 2 queued for nightly payout (paid),
# negative cancelled or timed out.
STATUS_COMPLETE = 100
STATUS_QUEUED_PAYOUT = 2


def classify_status(status: int) -> EventKind:
  if status >= STATUS_COMPLETE or status == STATUS_QUEUED_PAYOUT:
    return EventKind.PAYMENT_COMPLETED
  if status < 0:
    return EventKind.PAYMENT_FAILED
  return EventKind.PAYMENT_PENDING


class CoinPaymentsProvider(PaymentProvider):
  """Creates CoinPayments transactions and parses IPN callbacks."""

  name = "coinpayments"
  required_credentials = ("merchant_id", "public_key", "private_key",
                          "ipn_secret")

  async def create_checkout(
      self, config: ProviderConfig, request: CheckoutRequest
  ) -> ProviderCheckout:
    credentials = self.check_credentials(config)
    pay_currency = str(credentials.get("currency") or "BTC").lower()
    base_url = request.base_url.rstrip("/")

    params = {
        "cmd": "create_transaction",
        "merchant": credentials["merchant_id"],
        "key": credentials["public_key"],
        "version": "1",
        "format": "json",
        "amount": request.amount_decimal,
        "currency1": request.currency.upper(),
        "currency2": pay_currency,
        "item_name": request.description,
        "item_number": request.payment.id,
        "invoice": request.order.order_number or request.order.id,
        "buyer_email": request.user.email or "",
        "ipn_url": f"{base_url}/webhooks/{self.name}",
        "success_url": request.return_url("success", self.name),
        "cancel_url": request.return_url("cancel", self.name),
    }
    if request.guild_id:
      params["ipn_url"] += f"?guild_id={request.guild_id}"
    form_body = urllib.parse.urlencode(params)
    hmac_header = signatures.compute_hmac_sha512(
        credentials["private_key"], form_body.encode("utf-8")
    )

    response = await self._send(
        "POST",
        API_URL,
        headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "HMAC": hmac_header,
        },
        content=form_body,
    )
    data = self._json_or_error(response)
    if data.get("error") != "ok":
      logger.error("CoinPayments API error: %s", data.get("error"))
      raise ProviderAPIError(
          self.name,
          data.get("error") or "Failed to create CoinPayments transaction",
      )

    result = data.get("result") or {}
    txn_id = result.get("txn_id")
    status_url = result.get("status_url")
    if not txn_id or not status_url:
      raise ProviderAPIError(self.name, "transaction response incomplete")

    return ProviderCheckout(
        result=RedirectResult(url=status_url),
        transaction_id=txn_id,
        provider_data={
            "coinpayments": {
                "txnId": txn_id,
                "statusUrl": status_url,
                "address": result.get("address"),
                "amount": result.get("amount"),
                "currency": pay_currency,
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
        signatures.header_value(headers, "hmac"),
        self.webhook_secret(config),
    )

  def parse_webhook(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookEvent:
    try:
      body = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
      raise InvalidRequestError("IPN body is not valid UTF-8") from e
    form = dict(urllib.parse.parse_qsl(body))
    payment_id = form.get("item_number")
    if not payment_id:
      raise InvalidRequestError("Missing payment id")
    try:
      status = int(form.get("status") or "0")
    except ValueError as e:
      raise InvalidRequestError("Invalid IPN status") from e

    txn_id = form.get("txn_id")
    return WebhookEvent(
        provider=self.name,
        event_type=form.get("ipn_type") or "ipn",
        kind=classify_status(status),
        event_id=form.get("ipn_id"),
        idempotency_key=txn_id or payment_id,
        transaction_id=txn_id,
        payment_id=payment_id,
        currency=(form.get("currency1") or "").lower() or None,
        provider_data={
            "coinpayments": {
                "txnId": txn_id,
                "status": status,
                "status_text": form.get("status_text"),
                "amount": form.get("amount1"),
                "currency": form.get("currency2"),
            }
        },
    )
