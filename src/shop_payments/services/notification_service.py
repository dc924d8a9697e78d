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

"""Best-effort purchase and cancellation announcements."""

import functools
import logging

from shop_payments import db
from shop_payments.services.bot_api import BotApiClient
from shop_payments.services.hooks import PostCommitHooks
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class NotificationSink:
  """Posts to the guild's configured shop notification channel, if any."""

  def __init__(self, session: AsyncSession, bot_api: BotApiClient):
    self.session = session
    self.bot_api = bot_api

  async def announce(self, guild_id: str, content: str) -> None:
    settings = await db.get_shop_settings(self.session, guild_id)
    if not settings or not settings.notification_channel_id:
      logger.debug("No notification channel for guild %s", guild_id)
      return
    await self.bot_api.send_message(
        guild_id, settings.notification_channel_id, content
    )

  def queue(self, hooks: PostCommitHooks, guild_id: str, content: str) -> None:
    hooks.add("notify", functools.partial(self.announce, guild_id, content))
