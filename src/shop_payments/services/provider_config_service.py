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

"""Resolution of provider credentials.

Two sources exist: the platform row in `payment_providers` (the operator's own
accounts) and per-guild rows in `guild_payment_configs` (a guild selling
through its own account). Nothing is cached beyond the request's session.
"""

import logging
from typing import Optional

from shop_payments import db
from shop_payments.exceptions import ConfigurationError
from shop_payments.models import ProviderConfig
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ProviderConfigStore:
  """Loads provider configuration for the current request."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get_platform_config(self, provider: str) -> Optional[ProviderConfig]:
    row = await db.get_provider_config(self.session, provider)
    if not row:
      return None
    credentials = dict(row.config or {})
    return ProviderConfig(
        provider=row.provider,
        is_active=bool(row.is_active),
        auto_verification=bool(row.auto_verification),
        credentials=credentials,
        webhook_secret=credentials.get("webhook_secret"),
    )

  async def get_guild_config(
      self, guild_id: str, provider: str
  ) -> Optional[ProviderConfig]:
    row = await db.get_guild_payment_config(self.session, guild_id, provider)
    if not row:
      return None
    # A guild's own account confirms payments through signed webhooks only.
    return ProviderConfig(
        provider=row.provider,
        is_active=bool(row.enabled),
        auto_verification=True,
        credentials=dict(row.config or {}),
        webhook_secret=row.webhook_secret,
        guild_id=row.guild_id,
    )

  async def resolve(
      self, provider: str, guild_id: Optional[str] = None
  ) -> ProviderConfig:
    """Returns the config checkouts for `guild_id` should use.

    An enabled guild config wins over the platform config.

    Raises:
      ConfigurationError: If neither an enabled guild config nor an active
        platform config exists.
    """
    if guild_id:
      guild_config = await self.get_guild_config(guild_id, provider)
      if guild_config and guild_config.is_active:
        return guild_config

    platform_config = await self.get_platform_config(provider)
    if platform_config and platform_config.is_active:
      return platform_config

    raise ConfigurationError(f"Payment provider {provider} is not configured")

  async def resolve_for_webhook(
      self, provider: str, guild_id: Optional[str]
  ) -> ProviderConfig:
    """Returns the config whose secret authenticates an inbound webhook.

    The lookup key is the guild in the request URL, never anything inside the
    body. A disabled guild config still verifies late deliveries for
    payments it started.
    """
    if guild_id:
      guild_config = await self.get_guild_config(guild_id, provider)
      if guild_config:
        return guild_config

    platform_config = await self.get_platform_config(provider)
    if platform_config:
      return platform_config

    logger.error(
        "Webhook for %s has no configuration (guild %s)", provider, guild_id
    )
    raise ConfigurationError(
        f"Webhook not configured for provider {provider}"
    )
