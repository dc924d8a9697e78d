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

"""Expires subscriptions whose paid period has ended.

Meant to run periodically (e.g. from cron). Each lapsed active subscription is
marked `expired` and its role removed through the bot API; running it twice
does nothing the second time.

Usage:
  expire_subscriptions --database_url=... --bot_api_url=...
      --internal_api_secret=... [--dry_run]
"""

import asyncio
import logging

from absl import app as absl_app
from absl import flags
import httpx
from shop_payments import config
from shop_payments import db
from shop_payments.services.audit_service import AuditLogger
from shop_payments.services.bot_api import BotApiClient
from shop_payments.services.fulfillment_service import FulfillmentEngine
from shop_payments.services.notification_service import NotificationSink
from shop_payments.services.subscription_service import SubscriptionService

FLAGS = flags.FLAGS
flags.DEFINE_bool("dry_run", False, "List lapsed subscriptions only")

logger = logging.getLogger(__name__)


async def expire_subscriptions() -> None:
  settings = config.settings_from_flags()
  await db.manager.init_db(settings.database_url)
  try:
    async with db.manager.session_factory() as session:
      if FLAGS.dry_run:
        lapsed = await db.get_lapsed_subscriptions(session, db.utc_now())
        for subscription in lapsed:
          print(
              f"{subscription.id} guild={subscription.guild_id}"
              f" user={subscription.discord_user_id}"
              f" ended={subscription.current_period_end}"
          )
        print(f"{len(lapsed)} lapsed subscription(s)")
        return

      async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
        bot_api = BotApiClient(
            client, settings.bot_api_url, settings.internal_api_secret
        )
        engine = FulfillmentEngine(
            session,
            bot_api,
            AuditLogger(session),
            NotificationSink(session, bot_api),
        )
        expired = await SubscriptionService(session, engine).expire_lapsed()
    print(f"Expired {len(expired)} subscription(s)")
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the expiry sweep."""
  del argv
  logging.basicConfig(level=logging.INFO)
  asyncio.run(expire_subscriptions())


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
