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

"""Internal payment routes: checkout, buyer return and manual verification."""

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from shop_payments import dependencies
from shop_payments.models import InitiateResult
from shop_payments.models import PaymentStatusResponse
from shop_payments.models import VerifyPaymentRequest
from shop_payments.services.checkout_service import CheckoutService
from shop_payments.services.verification_service import VerificationService
from shop_payments.services.webhook_service import WebhookProcessor

router = APIRouter(dependencies=[Depends(dependencies.verify_internal_secret)])


@router.post(
    "/payments/{id}/checkout",
    response_model=InitiateResult,
    operation_id="start_checkout",
)
async def start_checkout(
    payment_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> InitiateResult:
  """Start the provider checkout of a pending payment."""
  return await checkout_service.start_checkout(payment_id)


@router.post(
    "/payments/{id}/verify",
    response_model=PaymentStatusResponse,
    operation_id="verify_payment",
)
async def verify_payment(
    payment_id: str = Path(..., alias="id"),
    verify_request: VerifyPaymentRequest = Body(...),
    verification_service: VerificationService = Depends(
        dependencies.get_verification_service
    ),
) -> PaymentStatusResponse:
  """Confirm or reject a payment that awaits manual verification."""
  return await verification_service.verify(payment_id, verify_request)


@router.post(
    "/payments/{id}/confirm",
    response_model=PaymentStatusResponse,
    operation_id="confirm_payment",
)
async def confirm_payment(
    payment_id: str = Path(..., alias="id"),
    processor: WebhookProcessor = Depends(dependencies.get_webhook_processor),
) -> PaymentStatusResponse:
  """Capture a payment the buyer approved, when they return from the provider."""
  return await processor.confirm_payment(payment_id)
