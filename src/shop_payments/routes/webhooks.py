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

"""Inbound provider webhook route."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from fastapi import Request
from shop_payments import dependencies
from shop_payments.models import WebhookAck
from shop_payments.services.webhook_service import WebhookProcessor

router = APIRouter()


@router.post(
    "/webhooks/{provider}",
    response_model=WebhookAck,
    operation_id="receive_webhook",
)
async def receive_webhook(
    request: Request,
    provider: str = Path(...),
    guild_id: Optional[str] = Query(None),
    processor: WebhookProcessor = Depends(dependencies.get_webhook_processor),
) -> WebhookAck:
  """Receive a provider callback.

  The body is read as raw bytes; it must not be parsed before the signature
  has been checked against it.
  """
  raw_body = await request.body()
  return await processor.handle(
      provider, raw_body, request.headers, guild_id
  )
