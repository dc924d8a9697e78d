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

"""Operator confirmation of payments that cannot verify themselves.

Direct wallet transfers, and platform providers with auto-verification
switched off, stay pending until an operator confirms or rejects them. A
confirmation goes through the same completion path as a webhook.
"""

import logging

from shop_payments import db
from shop_payments.enums import OrderStatus
from shop_payments.enums import PaymentStatus
from shop_payments.exceptions import DuplicateEventError
from shop_payments.exceptions import PaymentStateError
from shop_payments.exceptions import ResourceNotFoundError
from shop_payments.models import PaymentStatusResponse
from shop_payments.models import VerifyPaymentRequest
from shop_payments.services.fulfillment_service import Purchase
from shop_payments.services.webhook_service import WebhookProcessor
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class VerificationService:
  """Applies an operator's confirm/reject decision to a pending payment."""

  def __init__(self, session: AsyncSession, processor: WebhookProcessor):
    self.session = session
    self.processor = processor

  async def verify(
      self, payment_id: str, request: VerifyPaymentRequest
  ) -> PaymentStatusResponse:
    payment = await db.get_payment(self.session, payment_id)
    if payment is None:
      raise ResourceNotFoundError(f"Payment {payment_id} not found")
    if payment.status != PaymentStatus.PENDING.value:
      raise PaymentStateError(
          f"Payment {payment_id} is already {payment.status}"
      )

    transaction_id = request.transaction_id or payment.transaction_id
    if request.transaction_id and request.transaction_id != payment.transaction_id:
      other = await db.get_payment_by_transaction(
          self.session, payment.provider, request.transaction_id
      )
      if other is not None:
        raise PaymentStateError(
            f"Transaction {request.transaction_id} is already recorded on"
            f" payment {other.id}"
        )

    order = await db.get_order(self.session, payment.order_id)
    purchase = Purchase(
        provider=payment.provider,
        transaction_id=transaction_id or payment.id,
        payment_id=payment.id,
        order_id=payment.order_id,
        amount_cents=payment.amount_cents,
        currency=payment.currency,
    )
    if order is not None:
      purchase.guild_id = order.guild_id
      purchase.shop_item_id = order.shop_item_id
      purchase.discord_user_id = order.discord_user_id
      purchase.coupon_id = order.coupon_id

    fields = {
        "verified_at": db.utc_now(),
        "verified_by": request.verified_by or "operator",
        "notes": request.notes,
    }
    provider_data = {
        "manual_verification": {
            "action": request.action,
            "transactionId": request.transaction_id,
        }
    }

    if request.action == "reject":
      changed = await self.processor.fail_payment(
          purchase, "rejected by operator", provider_data, **fields
      )
    else:
      if request.transaction_id:
        fields["transaction_id"] = request.transaction_id
      try:
        changed = await self.processor.complete_purchase(
            purchase,
            event_key=f"manual:{payment.id}",
            event_type="manual_verification",
            provider_data=provider_data,
            **fields,
        )
      except DuplicateEventError as e:
        raise PaymentStateError(
            f"Payment {payment_id} was already verified"
        ) from e
    await self.processor.hooks.run()

    if not changed:
      raise PaymentStateError(f"Payment {payment_id} is no longer pending")

    self.processor.audit.queue(
        self.processor.hooks,
        purchase.guild_id,
        "payment_verified" if request.action == "confirm" else "payment_rejected",
        {"payment_id": payment.id, "verified_by": fields["verified_by"]},
    )
    await self.processor.hooks.run()

    if request.action == "confirm":
      status, order_status = PaymentStatus.COMPLETED, OrderStatus.PAID
    else:
      status, order_status = PaymentStatus.FAILED, OrderStatus.FAILED
    return PaymentStatusResponse(
        payment_id=payment.id,
        status=status.value,
        order_status=order_status.value if order else None,
    )
