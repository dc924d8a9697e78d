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

"""Tests for the delivery strategies of the fulfillment engine."""

import asyncio
import re

from absl.testing import absltest
from shop_payments import db
from shop_payments import testing
from shop_payments.enums import SubscriptionStatus
from shop_payments.services import fulfillment_service
from shop_payments.services.fulfillment_service import Purchase
from shop_payments.services.hooks import PostCommitHooks

CODE_PATTERN = re.compile(r"^[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}$")


def make_purchase(transaction_id: str, item_id: str = "role-premium", **fields):
  return Purchase(
      provider="stripe",
      transaction_id=transaction_id,
      guild_id=testing.GUILD_ID,
      shop_item_id=item_id,
      discord_user_id=testing.USER_ID,
      **fields,
  )


class FulfillmentEngineTest(testing.ShopTestCase):

  def fulfill(self, purchase: Purchase):
    """Runs one fulfillment the way the webhook processor does."""

    async def run():
      async with self.session_factory() as session, self.http_client() as client:
        engine = self.make_engine(session, client)
        hooks = PostCommitHooks()
        item = await db.get_shop_item(
            session, purchase.guild_id, purchase.shop_item_id
        )
        result = await engine.fulfill(item, purchase, hooks)
        await session.commit()
        await engine.apply(purchase, result)
        await hooks.run()
        return result

    return asyncio.run(run())

  def revoke(self, subscription_id: str):
    async def run():
      async with self.session_factory() as session, self.http_client() as client:
        engine = self.make_engine(session, client)
        hooks = PostCommitHooks()
        subscription = await db.get_subscription_by_id(session, subscription_id)
        result = await engine.revoke(
            subscription,
            SubscriptionStatus.CANCELLED,
            hooks,
            action="subscription_cancelled",
        )
        await hooks.run()
        return result

    return asyncio.run(run())

  def audit_actions(self):
    return [e.action for e in self.query(db.AuditLogEntry)]

  def test_generate_code_format(self):
    codes = {fulfillment_service.generate_code() for _ in range(50)}
    self.assertLen(codes, 50)
    for code in codes:
      self.assertRegex(code, CODE_PATTERN)

  def test_role_delivery_grants_role_once(self):
    self.seed_shop_item()
    result = self.fulfill(make_purchase("cs_1"))

    self.assertTrue(result.role_granted)
    self.assertEqual(result.role_to_grant, testing.ROLE_ID)
    calls = self.bot_calls_for("POST")
    self.assertLen(calls, 1)
    self.assertEqual(
        calls[0]["path"],
        f"/discord/{testing.GUILD_ID}/users/{testing.USER_ID}/roles",
    )
    self.assertEqual(calls[0]["json"], {"roleId": testing.ROLE_ID})
    self.assertEqual(calls[0]["secret"], testing.INTERNAL_SECRET)
    self.assertEqual(self.audit_actions(), ["role_purchased"])

  def test_role_add_failure_is_logged_not_raised(self):
    self.seed_shop_item()
    self.bot_status = 500
    with self.assertLogs(fulfillment_service.logger, level="ERROR"):
      result = self.fulfill(make_purchase("cs_1"))
    self.assertFalse(result.role_granted)
    self.assertEqual(self.audit_actions(), ["role_purchased"])

  def test_code_delivery_mints_bound_code(self):
    self.seed_shop_item(item_id="gift-code", delivery_type="code")
    result = self.fulfill(make_purchase("cs_1", item_id="gift-code"))

    self.assertRegex(result.code, CODE_PATTERN)
    self.assertIsNone(result.role_to_grant)
    codes = self.query(db.ShopCode)
    self.assertLen(codes, 1)
    self.assertEqual(codes[0].code, result.code)
    self.assertEqual(codes[0].source, "minted")
    self.assertEqual(codes[0].transaction_id, "cs_1")
    self.assertEqual(codes[0].buyer_discord_id, testing.USER_ID)
    self.assertEmpty(self.bot_calls)
    self.assertEqual(self.audit_actions(), ["code_issued"])

  def test_prefilled_pool_of_k_serves_k_purchases(self):
    self.seed_shop_item(item_id="key", delivery_type="prefilled")
    pool = ["KEY-AAAA", "KEY-BBBB"]
    self.seed(*[
        db.ShopPrefilledCode(
            guild_id=testing.GUILD_ID, shop_item_id="key", code=code
        )
        for code in pool
    ])

    issued = []
    for i in range(len(pool)):
      result = self.fulfill(make_purchase(f"cs_{i}", item_id="key"))
      self.assertFalse(result.pool_exhausted)
      issued.append(result.code)
    self.assertCountEqual(issued, pool)

    with self.assertLogs(fulfillment_service.logger, level="ERROR"):
      last = self.fulfill(make_purchase("cs_last", item_id="key"))
    self.assertTrue(last.pool_exhausted)
    self.assertIsNone(last.code)

    self.assertEmpty(self.query(db.ShopPrefilledCode))
    codes = self.query(db.ShopCode)
    self.assertLen(codes, len(pool))
    self.assertTrue(all(c.source == "prefilled" for c in codes))
    self.assertEqual(
        self.audit_actions(),
        ["prefilled_code_issued", "prefilled_code_issued",
         "prefilled_pool_exhausted"],
    )

  def test_prefilled_pool_is_scoped_by_guild(self):
    self.seed_shop_item(item_id="key", delivery_type="prefilled")
    self.seed(
        db.ShopPrefilledCode(
            guild_id=testing.OTHER_GUILD_ID, shop_item_id="key", code="OTHER"
        )
    )
    with self.assertLogs(fulfillment_service.logger, level="ERROR"):
      result = self.fulfill(make_purchase("cs_1", item_id="key"))
    self.assertTrue(result.pool_exhausted)
    self.assertLen(self.query(db.ShopPrefilledCode), 1)

  def test_none_delivery_grants_nothing(self):
    self.seed_shop_item(item_id="tip", delivery_type="none")
    result = self.fulfill(make_purchase("cs_1", item_id="tip"))
    self.assertIsNone(result.role_to_grant)
    self.assertEmpty(self.bot_calls)
    self.assertEqual(self.audit_actions(), ["purchase_recorded"])

  def test_recurring_role_upserts_subscription(self):
    self.seed_shop_item(billing_type="subscription", billing_interval="month")
    purchase = make_purchase(
        "cs_1",
        subscription_id="sub_1",
        customer_id="cus_1",
        current_period_end="2026-11-19T00:00:00+00:00",
    )
    result = self.fulfill(purchase)

    self.assertTrue(result.role_granted)
    subscriptions = self.query(db.ShopSubscription)
    self.assertLen(subscriptions, 1)
    self.assertEqual(subscriptions[0].id, result.subscription_id)
    self.assertEqual(subscriptions[0].status, "active")
    self.assertEqual(subscriptions[0].stripe_subscription_id, "sub_1")
    self.assertEqual(
        subscriptions[0].current_period_end, "2026-11-19T00:00:00+00:00"
    )
    self.assertEqual(self.audit_actions(), ["subscription_activated"])

  def test_resubscribe_reactivates_existing_row(self):
    self.seed_shop_item(delivery_type="subscription")
    self.seed(
        db.ShopSubscription(
            id="sub-row",
            guild_id=testing.GUILD_ID,
            shop_item_id="role-premium",
            discord_user_id=testing.USER_ID,
            stripe_subscription_id="sub_old",
            status="cancelled",
        )
    )
    result = self.fulfill(make_purchase("cs_2", subscription_id="sub_new"))

    self.assertEqual(result.subscription_id, "sub-row")
    subscription = self.get(db.ShopSubscription, "sub-row")
    self.assertEqual(subscription.status, "active")
    self.assertEqual(subscription.stripe_subscription_id, "sub_new")

  def test_revoke_removes_role_at_most_once(self):
    self.seed_shop_item(delivery_type="subscription")
    self.seed(
        db.ShopSubscription(
            id="sub-row",
            guild_id=testing.GUILD_ID,
            shop_item_id="role-premium",
            discord_user_id=testing.USER_ID,
            status="active",
        )
    )
    first = self.revoke("sub-row")
    second = self.revoke("sub-row")

    self.assertTrue(first.transitioned)
    self.assertTrue(first.role_removed)
    self.assertFalse(second.transitioned)
    deletes = self.bot_calls_for("DELETE")
    self.assertLen(deletes, 1)
    self.assertEqual(
        deletes[0]["path"],
        f"/discord/{testing.GUILD_ID}/users/{testing.USER_ID}"
        f"/roles/{testing.ROLE_ID}",
    )
    self.assertEqual(self.get(db.ShopSubscription, "sub-row").status,
                     "cancelled")
    self.assertEqual(self.audit_actions(), ["subscription_cancelled"])

  def test_announcement_goes_to_configured_channel(self):
    self.seed_shop_item(delivery_type="none")
    self.seed(
        db.ShopSettings(
            guild_id=testing.GUILD_ID, notification_channel_id="chan-1"
        )
    )
    self.fulfill(make_purchase("cs_1"))

    sends = [c for c in self.bot_calls if c["path"].endswith("/send")]
    self.assertLen(sends, 1)
    self.assertEqual(
        sends[0]["path"], f"/discord/{testing.GUILD_ID}/channels/chan-1/send"
    )
    self.assertIn(testing.USER_ID, sends[0]["json"]["content"])

  def test_failed_announcement_does_not_block_fulfillment(self):
    self.seed_shop_item(delivery_type="code")
    self.seed(
        db.ShopSettings(
            guild_id=testing.GUILD_ID, notification_channel_id="chan-1"
        )
    )
    self.bot_status = 503
    result = self.fulfill(make_purchase("cs_1"))
    self.assertIsNotNone(result.code)
    self.assertLen(self.query(db.ShopCode), 1)
    self.assertEqual(self.audit_actions(), ["code_issued"])


if __name__ == "__main__":
  absltest.main()
