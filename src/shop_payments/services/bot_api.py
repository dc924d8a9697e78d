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

"""Client for the internal bot API that mutates Discord state.

Calls are made once; a non-2xx response or a transport error is raised as a
`FulfillmentError` for the caller to log. Nothing here retries.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from shop_payments.exceptions import FulfillmentError

logger = logging.getLogger(__name__)


class BotApiClient:
  """Role and message operations against the bot API."""

  def __init__(
      self,
      http_client: httpx.AsyncClient,
      base_url: str,
      internal_secret: Optional[str] = None,
  ):
    self.http_client = http_client
    self.base_url = base_url.rstrip("/")
    self.internal_secret = internal_secret

  def _headers(self) -> Dict[str, str]:
    if self.internal_secret:
      return {"X-Internal-Secret": self.internal_secret}
    return {}

  async def _call(
      self, method: str, path: str, json: Optional[Dict[str, Any]] = None
  ) -> None:
    url = f"{self.base_url}{path}"
    try:
      response = await self.http_client.request(
          method, url, headers=self._headers(), json=json
      )
    except httpx.HTTPError as e:
      raise FulfillmentError(f"Bot API {method} {path} failed: {e}") from e
    if response.is_error:
      raise FulfillmentError(
          f"Bot API {method} {path} returned HTTP {response.status_code}:"
          f" {response.text[:200]}"
      )

  async def add_role(self, guild_id: str, user_id: str, role_id: str) -> None:
    await self._call(
        "POST",
        f"/discord/{guild_id}/users/{user_id}/roles",
        json={"roleId": role_id},
    )

  async def remove_role(
      self, guild_id: str, user_id: str, role_id: str
  ) -> None:
    await self._call(
        "DELETE", f"/discord/{guild_id}/users/{user_id}/roles/{role_id}"
    )

  async def send_message(
      self, guild_id: str, channel_id: str, content: str
  ) -> None:
    await self._call(
        "POST",
        f"/discord/{guild_id}/channels/{channel_id}/send",
        json={"content": content},
    )
