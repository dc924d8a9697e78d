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

"""Integration tests for the payments server."""

import json
import time
import urllib.parse

from absl.testing import absltest
import httpx
from shop_payments import db
from shop_payments import signatures
from shop_payments import testing
from shop_payments.services import fulfillment_service
from shop_payments.services import webhook_service

INTERNAL_HEADERS = {"X-Internal-Secret": testing.INTERNAL_SECRET}
PERIOD_END = 1_793_000_000
RENEWED_PERIOD_END = 1_795_600_000


class StripeWebhookTest(testing.AppTestCase):
  """Stripe webhooks against a guild's own account."""

  def setUp(self):
    super().setUp()
    self.seed_guild_stripe()

  def test_completed_session_fulfills_once(self):
    self.seed_shop_item()
    self.seed_order("stripe", transaction_id="cs_test_1")

    response = self.post_stripe_event(testing.stripe_session_event())

    self.assertEqual(response.status_code, 200, msg=response.text)
    self.assertEqual(response.json(), {"received": True})

    shop_orders = self.query(db.ShopOrder)
    self.assertLen(shop_orders, 1)
    self.assertEqual(shop_orders[0].transaction_id, "cs_test_1")
    self.assertEqual(shop_orders[0].payment_id, "pay-1")
    self.assertEqual(shop_orders[0].delivery_type, "role")

    role_adds = self.bot_calls_for("POST")
    self.assertLen(role_adds, 1)
    self.assertEqual(role_adds[0]["json"], {"roleId": testing.ROLE_ID})

    payment = self.get(db.Payment, "pay-1")
    self.assertEqual(payment.status, "completed")
    self.assertEqual(payment.verified_by, "webhook:stripe")
    self.assertIsNotNone(payment.verified_at)
    self.assertEqual(self.get(db.Order, "order-1").status, "paid")
    self.assertLen(self.query(db.ProcessedWebhookEvent), 1)
    self.assertEqual(
        [e.action for e in self.query(db.AuditLogEntry)], ["role_purchased"]
    )

  def test_redelivered_session_is_a_no_op(self):
    self.seed_shop_item()
    self.seed_order("stripe", transaction_id="cs_test_1")
    event = testing.stripe_session_event()

    for _ in range(3):
      response = self.post_stripe_event(event)
      self.assertEqual(response.status_code, 200, msg=response.text)

    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)
    self.assertLen(self.query(db.ProcessedWebhookEvent), 1)

  def test_async_success_after_completed_does_not_fulfill_twice(self):
    self.seed_shop_item(item_id="gift", delivery_type="code")
    self.seed_order("stripe", transaction_id="cs_test_1", shop_item_id="gift")
    metadata = {
        "guild_id": testing.GUILD_ID,
        "shop_item_id": "gift",
        "discord_id": testing.USER_ID,
    }

    self.post_stripe_event(testing.stripe_session_event(metadata=metadata))
    self.post_stripe_event(
        testing.stripe_session_event(
            event_type="checkout.session.async_payment_succeeded",
            metadata=metadata,
        )
    )

    self.assertLen(self.query(db.ShopCode), 1)
    self.assertLen(self.query(db.ShopOrder), 1)

  def test_coupon_is_redeemed_once(self):
    self.seed_shop_item()
    self.seed(
        db.Coupon(id="coupon-1", guild_id=testing.GUILD_ID, code="SAVE10")
    )
    self.seed_order(
        "stripe", transaction_id="cs_test_1", coupon_id="coupon-1"
    )
    event = testing.stripe_session_event()

    self.post_stripe_event(event)
    self.post_stripe_event(event)

    self.assertEqual(self.get(db.Coupon, "coupon-1").redemption_count, 1)
    self.assertEqual(self.query(db.ShopOrder)[0].coupon_id, "coupon-1")

  def test_completion_without_payment_row_uses_signed_metadata(self):
    self.seed_shop_item()

    with self.assertLogs(webhook_service.logger, level="WARNING"):
      response = self.post_stripe_event(testing.stripe_session_event())

    self.assertEqual(response.status_code, 200)
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)

  def test_missing_shop_item_is_still_acknowledged(self):
    self.seed_order("stripe", transaction_id="cs_test_1")

    with self.assertLogs(webhook_service.logger, level="ERROR"):
      response = self.post_stripe_event(testing.stripe_session_event())

    self.assertEqual(response.status_code, 200)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "completed")
    self.assertEmpty(self.query(db.ShopOrder))
    self.assertEmpty(self.bot_calls)

  def test_role_add_failure_is_still_acknowledged(self):
    self.seed_shop_item()
    self.seed_order("stripe", transaction_id="cs_test_1")
    self.bot_status = 500

    with self.assertLogs(fulfillment_service.logger, level="ERROR"):
      response = self.post_stripe_event(testing.stripe_session_event())

    self.assertEqual(response.status_code, 200)
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "completed")

  def test_tampered_body_is_unauthorized(self):
    self.seed_shop_item()
    self.seed_order("stripe", transaction_id="cs_test_1")
    raw_body = json.dumps(testing.stripe_session_event()).encode("utf-8")
    header = testing.stripe_signature_header(
        testing.STRIPE_WEBHOOK_SECRET, raw_body
    )
    tampered = raw_body.replace(b"1000", b"0001")

    response = self.client.post(
        f"/webhooks/stripe?guild_id={testing.GUILD_ID}",
        content=tampered,
        headers={"Stripe-Signature": header},
    )

    self.assertEqual(response.status_code, 401)
    self.assertEqual(response.json()["code"], "INVALID_SIGNATURE")
    self.assertEqual(self.get(db.Payment, "pay-1").status, "pending")
    self.assertEmpty(self.query(db.AuditLogEntry))
    self.assertEmpty(self.bot_calls)

  def test_stale_signature_is_unauthorized(self):
    response = self.post_stripe_event(
        testing.stripe_session_event(), timestamp=int(time.time()) - 601
    )
    self.assertEqual(response.status_code, 401)

  def test_other_guild_secret_is_unauthorized(self):
    self.seed_guild_stripe(guild_id=testing.OTHER_GUILD_ID)
    response = self.post_stripe_event(
        testing.stripe_session_event(), secret="whsec_other"
    )
    self.assertEqual(response.status_code, 401)

  def test_guild_mismatch_is_rejected_without_mutation(self):
    self.seed_shop_item(guild_id=testing.OTHER_GUILD_ID)
    self.seed_order("stripe", transaction_id="cs_test_1")
    event = testing.stripe_session_event(
        metadata={
            "guild_id": testing.OTHER_GUILD_ID,
            "shop_item_id": "role-premium",
            "discord_id": testing.USER_ID,
        }
    )

    with self.assertLogs(webhook_service.logger, level="WARNING") as logs:
      response = self.post_stripe_event(event)

    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["code"], "GUILD_MISMATCH")
    self.assertTrue(any("SECURITY" in line for line in logs.output))
    self.assertEqual(self.get(db.Payment, "pay-1").status, "pending")
    self.assertEmpty(self.query(db.ShopOrder))
    self.assertEmpty(self.query(db.ProcessedWebhookEvent))
    self.assertEmpty(self.bot_calls)

  def test_missing_guild_id_is_bad_request(self):
    response = self.post_stripe_event(
        testing.stripe_session_event(), guild_id=None
    )
    self.assertEqual(response.status_code, 400)
    self.assertIn("guild_id", response.json()["detail"])

  def test_unconfigured_guild_is_bad_request(self):
    response = self.post_stripe_event(
        testing.stripe_session_event(), guild_id="guild-unknown"
    )
    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["code"], "PROVIDER_NOT_CONFIGURED")

  def test_unknown_provider_is_bad_request(self):
    response = self.client.post("/webhooks/bitpay", content=b"{}")
    self.assertEqual(response.status_code, 400)

  def test_expired_session_fails_payment(self):
    self.seed_order("stripe", transaction_id="cs_test_1")

    response = self.post_stripe_event(
        testing.stripe_session_event(
            event_type="checkout.session.expired", payment_status="unpaid"
        )
    )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "failed")
    self.assertEqual(self.get(db.Order, "order-1").status, "failed")
    self.assertEqual(
        [e.action for e in self.query(db.AuditLogEntry)], ["payment_failed"]
    )

  def test_failure_after_completion_changes_nothing(self):
    self.seed_shop_item()
    self.seed_order("stripe", transaction_id="cs_test_1")
    self.post_stripe_event(testing.stripe_session_event())

    response = self.post_stripe_event(
        testing.stripe_session_event(
            event_type="checkout.session.async_payment_failed"
        )
    )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "completed")
    self.assertEqual(self.get(db.Order, "order-1").status, "paid")

  def test_unpaid_completion_is_recorded_as_pending(self):
    self.seed_shop_item()
    self.seed_order("stripe", transaction_id="cs_test_1")

    response = self.post_stripe_event(
        testing.stripe_session_event(payment_status="unpaid")
    )

    self.assertEqual(response.status_code, 200)
    payment = self.get(db.Payment, "pay-1")
    self.assertEqual(payment.status, "pending")
    self.assertIn("pending_notice", payment.provider_data)
    self.assertEmpty(self.query(db.ShopOrder))
    self.assertEmpty(self.bot_calls)


class StripeSubscriptionTest(testing.AppTestCase):
  """Subscription lifecycle driven by Stripe events."""

  def setUp(self):
    super().setUp()
    self.seed_guild_stripe()
    self.seed_shop_item(billing_type="subscription", billing_interval="month")
    self.provider_handler = self.stripe_api

  def stripe_api(self, request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/subscriptions/sub_1":
      return httpx.Response(
          200,
          json={
              "id": "sub_1",
              "customer": "cus_1",
              "status": "active",
              "current_period_end": PERIOD_END,
          },
      )
    return httpx.Response(404, json={"error": {"message": "No such object"}})

  def seed_active_subscription(self):
    self.seed(
        db.ShopSubscription(
            id="sub-row",
            guild_id=testing.GUILD_ID,
            shop_item_id="role-premium",
            discord_user_id=testing.USER_ID,
            stripe_subscription_id="sub_1",
            stripe_customer_id="cus_1",
            status="active",
            current_period_end=db.timestamp_to_iso(PERIOD_END),
        )
    )

  def test_subscription_checkout_activates_with_provider_period(self):
    self.seed_order("stripe", transaction_id="cs_sub_1")

    response = self.post_stripe_event(
        testing.stripe_session_event(
            session_id="cs_sub_1",
            mode="subscription",
            subscription="sub_1",
            customer="cus_1",
        )
    )

    self.assertEqual(response.status_code, 200, msg=response.text)
    subscriptions = self.query(db.ShopSubscription)
    self.assertLen(subscriptions, 1)
    self.assertEqual(subscriptions[0].status, "active")
    self.assertEqual(subscriptions[0].stripe_subscription_id, "sub_1")
    self.assertEqual(
        subscriptions[0].current_period_end, db.timestamp_to_iso(PERIOD_END)
    )
    self.assertLen(self.bot_calls_for("POST"), 1)

  def test_renewal_updates_period_without_role_add(self):
    self.seed_active_subscription()

    response = self.post_stripe_event(
        testing.stripe_subscription_event(
            "sub_1",
            "customer.subscription.updated",
            current_period_end=RENEWED_PERIOD_END,
            metadata={"guild_id": testing.GUILD_ID},
        )
    )

    self.assertEqual(response.status_code, 200)
    subscription = self.get(db.ShopSubscription, "sub-row")
    self.assertEqual(
        subscription.current_period_end,
        db.timestamp_to_iso(RENEWED_PERIOD_END),
    )
    self.assertEqual(subscription.status, "active")
    self.assertEmpty(self.bot_calls)

  def test_update_for_unknown_subscription_is_skipped(self):
    response = self.post_stripe_event(
        testing.stripe_subscription_event(
            "sub_unknown",
            "customer.subscription.updated",
            current_period_end=RENEWED_PERIOD_END,
        )
    )
    self.assertEqual(response.status_code, 200)
    self.assertEmpty(self.query(db.ShopSubscription))

  def test_cancellation_survives_role_removal_failure(self):
    self.seed_active_subscription()
    self.bot_status = 500

    with self.assertLogs(fulfillment_service.logger, level="ERROR"):
      response = self.post_stripe_event(
          testing.stripe_subscription_event(
              "sub_1", "customer.subscription.deleted"
          )
      )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json(), {"received": True})
    self.assertEqual(self.get(db.ShopSubscription, "sub-row").status,
                     "cancelled")
    self.assertLen(self.bot_calls_for("DELETE"), 1)
    entries = self.query(db.AuditLogEntry)
    self.assertEqual([e.action for e in entries], ["subscription_cancelled"])
    self.assertFalse(entries[0].details["role_removed"])

  def test_repeated_deletion_removes_role_once(self):
    self.seed_active_subscription()

    for i in range(2):
      response = self.post_stripe_event(
          testing.stripe_subscription_event(
              "sub_1", "customer.subscription.deleted", event_id=f"evt_del_{i}"
          )
      )
      self.assertEqual(response.status_code, 200)

    self.assertEqual(self.get(db.ShopSubscription, "sub-row").status,
                     "cancelled")
    deletes = self.bot_calls_for("DELETE")
    self.assertLen(deletes, 1)
    self.assertTrue(deletes[0]["path"].endswith(f"/roles/{testing.ROLE_ID}"))

  def test_deletion_in_other_guild_is_ignored(self):
    self.seed_active_subscription()
    self.seed_guild_stripe(guild_id=testing.OTHER_GUILD_ID)

    response = self.post_stripe_event(
        testing.stripe_subscription_event(
            "sub_1", "customer.subscription.deleted"
        ),
        guild_id=testing.OTHER_GUILD_ID,
    )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(self.get(db.ShopSubscription, "sub-row").status, "active")
    self.assertEmpty(self.bot_calls)


class CryptoWebhookTest(testing.AppTestCase):
  """IPN callbacks from the platform's crypto providers."""

  def post_coinpayments(self, fields, secret="ipn-secret", guild_id=None):
    raw_body = urllib.parse.urlencode(fields).encode("utf-8")
    url = "/webhooks/coinpayments"
    if guild_id:
      url += f"?guild_id={guild_id}"
    return self.client.post(
        url,
        content=raw_body,
        headers={
            "HMAC": signatures.compute_hmac_sha512(secret, raw_body),
            "Content-Type": "application/x-www-form-urlencoded",
        },
    )

  def seed_coinpayments(self, auto_verification=True):
    self.seed_platform_provider(
        "coinpayments",
        auto_verification=auto_verification,
        merchant_id="merchant",
        public_key="public",
        private_key="private",
        ipn_secret="ipn-secret",
    )

  def test_coinpayments_completion_issues_code(self):
    self.seed_coinpayments()
    self.seed_shop_item(item_id="gift", delivery_type="code")
    self.seed_order(
        "coinpayments", transaction_id="CP-TXN-1", shop_item_id="gift"
    )
    fields = {"txn_id": "CP-TXN-1", "item_number": "pay-1", "status": "100",
              "ipn_type": "api"}

    first = self.post_coinpayments(fields)
    second = self.post_coinpayments(fields)

    self.assertEqual(first.status_code, 200, msg=first.text)
    self.assertEqual(second.status_code, 200)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "completed")
    codes = self.query(db.ShopCode)
    self.assertLen(codes, 1)
    self.assertEqual(codes[0].transaction_id, "CP-TXN-1")
    self.assertEqual(codes[0].guild_id, testing.GUILD_ID)
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertEmpty(self.bot_calls_for("POST"))

  def test_coinpayments_pending_status_changes_nothing(self):
    self.seed_coinpayments()
    self.seed_shop_item()
    self.seed_order("coinpayments", transaction_id="CP-TXN-1")

    response = self.post_coinpayments(
        {"txn_id": "CP-TXN-1", "item_number": "pay-1", "status": "1"}
    )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "pending")
    self.assertEmpty(self.query(db.ShopOrder))

  def test_coinpayments_signed_non_utf8_body_is_bad_request(self):
    self.seed_coinpayments()
    self.seed_shop_item()
    self.seed_order("coinpayments", transaction_id="CP-TXN-1")
    raw_body = b"txn_id=CP-TXN-1&item_number=pay-1&status=100&note=\xff\xfe"

    response = self.client.post(
        "/webhooks/coinpayments",
        content=raw_body,
        headers={
            "HMAC": signatures.compute_hmac_sha512("ipn-secret", raw_body),
            "Content-Type": "application/x-www-form-urlencoded",
        },
    )

    self.assertEqual(response.status_code, 400)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "pending")
    self.assertEmpty(self.query(db.ShopOrder))

  def test_coinpayments_bad_hmac_is_unauthorized(self):
    self.seed_coinpayments()
    response = self.post_coinpayments(
        {"txn_id": "CP-TXN-1", "item_number": "pay-1", "status": "100"},
        secret="wrong",
    )
    self.assertEqual(response.status_code, 401)

  def test_manual_verification_required_when_auto_verification_off(self):
    self.seed_coinpayments(auto_verification=False)
    self.seed_shop_item()
    self.seed_order("coinpayments", transaction_id="CP-TXN-1")

    response = self.post_coinpayments(
        {"txn_id": "CP-TXN-1", "item_number": "pay-1", "status": "100"}
    )

    self.assertEqual(response.status_code, 200)
    payment = self.get(db.Payment, "pay-1")
    self.assertEqual(payment.status, "pending")
    self.assertIn("completion_notice", payment.provider_data)
    self.assertEmpty(self.bot_calls)
    self.assertEqual(
        [e.action for e in self.query(db.AuditLogEntry)],
        ["payment_awaiting_verification"],
    )

    verified = self.client.post(
        "/payments/pay-1/verify",
        headers=INTERNAL_HEADERS,
        json={"action": "confirm", "verified_by": "admin-1"},
    )

    self.assertEqual(verified.status_code, 200, msg=verified.text)
    payment = self.get(db.Payment, "pay-1")
    self.assertEqual(payment.status, "completed")
    self.assertEqual(payment.verified_by, "admin-1")
    self.assertLen(self.bot_calls_for("POST"), 1)

  def test_nowpayments_expired_invoice_fails_payment(self):
    self.seed_platform_provider(
        "nowpayments", api_key="np-key", ipn_secret="np-ipn"
    )
    self.seed_order("nowpayments", transaction_id="4522625843")
    raw_body = json.dumps({
        "payment_id": 5077125051,
        "invoice_id": 4522625843,
        "order_id": "pay-1",
        "payment_status": "expired",
    }).encode("utf-8")

    response = self.client.post(
        "/webhooks/nowpayments",
        content=raw_body,
        headers={
            "x-nowpayments-sig": signatures.compute_hmac_sha512(
                "np-ipn", raw_body
            )
        },
    )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "failed")
    self.assertEqual(self.get(db.Order, "order-1").status, "failed")


class PayPalWebhookTest(testing.AppTestCase):

  def paypal_api(self, request: httpx.Request) -> httpx.Response:
    if request.url.path == "/v1/oauth2/token":
      return httpx.Response(200, json={"access_token": "token-1"})
    if request.url.path == "/v1/notifications/verify-webhook-signature":
      return httpx.Response(
          200, json={"verification_status": self.verification_status}
      )
    if request.url.path == "/v2/checkout/orders/PP-ORDER-1/capture":
      self.capture_calls += 1
      if self.capture_status != 201:
        return httpx.Response(
            self.capture_status,
            json={"message": "Instrument declined",
                  "details": [{"issue": "INSTRUMENT_DECLINED"}]},
        )
      return httpx.Response(201, json={
          "id": "PP-ORDER-1",
          "status": "COMPLETED",
          "purchase_units": [{"payments": {"captures": [{
              "id": "CAPTURE-1",
              "status": "COMPLETED",
              "custom_id": "pay-1",
              "amount": {"value": "10.00", "currency_code": "USD"},
          }]}}],
      })
    return httpx.Response(404, json={})

  def setUp(self):
    super().setUp()
    self.verification_status = "SUCCESS"
    self.capture_calls = 0
    self.capture_status = 201
    self.provider_handler = self.paypal_api
    self.seed_platform_provider(
        "paypal",
        client_id="client",
        client_secret="secret",
        webhook_id="WH-1",
    )
    self.seed_shop_item()
    self.seed_order("paypal", transaction_id="PP-ORDER-1")

  def post_paypal(self, event_id, event_type, resource):
    raw_body = json.dumps({
        "id": event_id,
        "event_type": event_type,
        "resource": resource,
    }).encode("utf-8")
    return self.client.post(
        "/webhooks/paypal",
        content=raw_body,
        headers={
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
            "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
            "PAYPAL-TRANSMISSION-ID": f"tx-{event_id}",
            "PAYPAL-TRANSMISSION-SIG": "sig",
            "PAYPAL-TRANSMISSION-TIME": "2026-10-19T00:00:00Z",
        },
    )

  def post_capture(self):
    return self.post_paypal(
        "WH-EVT-1",
        "PAYMENT.CAPTURE.COMPLETED",
        {
            "id": "CAPTURE-1",
            "custom_id": "pay-1",
            "amount": {"value": "10.00", "currency_code": "USD"},
            "supplementary_data": {"related_ids": {"order_id": "PP-ORDER-1"}},
        },
    )

  def post_approval(self):
    return self.post_paypal(
        "WH-EVT-0",
        "CHECKOUT.ORDER.APPROVED",
        {
            "id": "PP-ORDER-1",
            "status": "APPROVED",
            "purchase_units": [{"reference_id": "order-1",
                                "custom_id": "pay-1"}],
        },
    )

  def test_verified_capture_completes_payment(self):
    response = self.post_capture()

    self.assertEqual(response.status_code, 200, msg=response.text)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "completed")
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)

  def test_failed_verification_is_unauthorized(self):
    self.verification_status = "FAILURE"
    response = self.post_capture()
    self.assertEqual(response.status_code, 401)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "pending")

  def test_approved_order_is_captured_and_fulfilled_once(self):
    approval = self.post_approval()

    self.assertEqual(approval.status_code, 200, msg=approval.text)
    self.assertEqual(self.capture_calls, 1)
    payment = self.get(db.Payment, "pay-1")
    self.assertEqual(payment.status, "completed")
    self.assertEqual(payment.provider_data["paypal"]["captureId"], "CAPTURE-1")
    self.assertEqual(self.get(db.Order, "order-1").status, "paid")
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)

    # PayPal follows up with the capture notification and may redeliver the
    # approval; neither captures or fulfills again.
    self.assertEqual(self.post_capture().status_code, 200)
    self.assertEqual(self.post_approval().status_code, 200)
    self.assertEqual(self.capture_calls, 1)
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)

  def test_failed_capture_asks_for_redelivery(self):
    self.capture_status = 422

    response = self.post_approval()

    self.assertEqual(response.status_code, 502)
    self.assertEqual(self.get(db.Payment, "pay-1").status, "pending")
    self.assertEmpty(self.query(db.ProcessedWebhookEvent))
    self.assertEmpty(self.bot_calls)

  def test_buyer_return_captures_payment(self):
    response = self.client.post(
        "/payments/pay-1/confirm", headers=INTERNAL_HEADERS
    )

    self.assertEqual(response.status_code, 200, msg=response.text)
    self.assertEqual(
        response.json(),
        {"payment_id": "pay-1", "status": "completed", "order_status": "paid"},
    )
    self.assertEqual(self.capture_calls, 1)
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)

    again = self.client.post(
        "/payments/pay-1/confirm", headers=INTERNAL_HEADERS
    )
    self.assertEqual(again.status_code, 409)
    self.assertEqual(self.post_approval().status_code, 200)
    self.assertEqual(self.capture_calls, 1)
    self.assertLen(self.query(db.ShopOrder), 1)

  def test_buyer_return_requires_capturing_provider(self):
    self.seed_guild_stripe()
    self.seed_order(
        "stripe", payment_id="pay-2", order_id="order-2",
        transaction_id="cs_test_2",
    )

    response = self.client.post(
        "/payments/pay-2/confirm", headers=INTERNAL_HEADERS
    )

    self.assertEqual(response.status_code, 400)
    self.assertEqual(self.get(db.Payment, "pay-2").status, "pending")
    self.assertEqual(self.capture_calls, 0)


class InternalRoutesTest(testing.AppTestCase):
  """Operator endpoints guarded by the internal secret."""

  def setUp(self):
    super().setUp()
    self.seed_shop_item()

  def test_routes_require_internal_secret(self):
    self.seed_order("direct_wallet")
    for headers in ({}, {"X-Internal-Secret": "wrong"}):
      response = self.client.post(
          "/payments/pay-1/checkout", headers=headers
      )
      self.assertEqual(response.status_code, 403)

  def test_routes_refuse_without_configured_secret(self):
    self.app.state.settings = self.settings.model_copy(
        update={"internal_api_secret": None}
    )
    response = self.client.post(
        "/payments/pay-1/checkout", headers=INTERNAL_HEADERS
    )
    self.assertEqual(response.status_code, 500)

  def test_checkout_route_starts_once(self):
    self.seed_guild_stripe()
    self.seed_order("stripe")
    self.provider_handler = lambda r: httpx.Response(
        200, json={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}
    )

    first = self.client.post("/payments/pay-1/checkout", headers=INTERNAL_HEADERS)
    second = self.client.post(
        "/payments/pay-1/checkout", headers=INTERNAL_HEADERS
    )

    self.assertEqual(first.status_code, 200, msg=first.text)
    self.assertEqual(
        first.json(),
        {"type": "redirect", "url": "https://checkout.stripe.com/c/cs_1"},
    )
    self.assertEqual(second.status_code, 409)
    self.assertEqual(second.json()["code"], "PAYMENT_STATE_CONFLICT")

  def test_checkout_route_reports_missing_credentials(self):
    self.seed_platform_provider("coinpayments", merchant_id="merchant")
    self.seed_order("coinpayments")

    response = self.client.post(
        "/payments/pay-1/checkout", headers=INTERNAL_HEADERS
    )

    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["code"], "PROVIDER_NOT_CONFIGURED")
    self.assertIsNone(self.get(db.Payment, "pay-1").transaction_id)

  def test_direct_wallet_confirm_fulfills(self):
    self.seed_order("direct_wallet")

    response = self.client.post(
        "/payments/pay-1/verify",
        headers=INTERNAL_HEADERS,
        json={
            "action": "confirm",
            "verified_by": "admin-1",
            "transaction_id": "0xabc",
            "notes": "Seen on chain",
        },
    )

    self.assertEqual(response.status_code, 200, msg=response.text)
    self.assertEqual(
        response.json(),
        {"payment_id": "pay-1", "status": "completed", "order_status": "paid"},
    )
    payment = self.get(db.Payment, "pay-1")
    self.assertEqual(payment.transaction_id, "0xabc")
    self.assertEqual(payment.notes, "Seen on chain")
    self.assertEqual(self.get(db.Order, "order-1").status, "paid")
    self.assertLen(self.query(db.ShopOrder), 1)
    self.assertLen(self.bot_calls_for("POST"), 1)
    self.assertEqual(
        [e.action for e in self.query(db.AuditLogEntry)],
        ["role_purchased", "payment_verified"],
    )

    again = self.client.post(
        "/payments/pay-1/verify",
        headers=INTERNAL_HEADERS,
        json={"action": "confirm"},
    )
    self.assertEqual(again.status_code, 409)
    self.assertLen(self.bot_calls_for("POST"), 1)

  def test_reject_fails_payment(self):
    self.seed_order("direct_wallet")

    response = self.client.post(
        "/payments/pay-1/verify",
        headers=INTERNAL_HEADERS,
        json={"action": "reject", "verified_by": "admin-1"},
    )

    self.assertEqual(response.status_code, 200, msg=response.text)
    self.assertEqual(response.json()["status"], "failed")
    self.assertEqual(self.get(db.Payment, "pay-1").status, "failed")
    self.assertEqual(self.get(db.Order, "order-1").status, "failed")
    self.assertEmpty(self.bot_calls)

  def test_transaction_reused_by_another_payment_is_refused(self):
    self.seed_order("direct_wallet", transaction_id="0xabc")
    self.seed_order("direct_wallet", payment_id="pay-2", order_id="order-2")

    response = self.client.post(
        "/payments/pay-2/verify",
        headers=INTERNAL_HEADERS,
        json={"action": "confirm", "transaction_id": "0xabc"},
    )

    self.assertEqual(response.status_code, 409)
    self.assertEqual(self.get(db.Payment, "pay-2").status, "pending")

  def test_verify_unknown_payment_is_not_found(self):
    response = self.client.post(
        "/payments/missing/verify",
        headers=INTERNAL_HEADERS,
        json={"action": "confirm"},
    )
    self.assertEqual(response.status_code, 404)

  def test_revoke_route_expires_subscription(self):
    self.seed(
        db.ShopSubscription(
            id="sub-row",
            guild_id=testing.GUILD_ID,
            shop_item_id="role-premium",
            discord_user_id=testing.USER_ID,
            status="active",
        )
    )
    url = f"/guilds/{testing.GUILD_ID}/subscriptions/sub-row/revoke"

    response = self.client.post(
        url, headers=INTERNAL_HEADERS, json={"revoked_by": "admin-1"}
    )

    self.assertEqual(response.status_code, 200, msg=response.text)
    self.assertEqual(
        response.json(),
        {"subscription_id": "sub-row", "status": "expired",
         "role_removed": True},
    )
    self.assertEqual(self.get(db.ShopSubscription, "sub-row").status,
                     "expired")
    entries = self.query(db.AuditLogEntry)
    self.assertEqual(entries[0].action, "subscription_revoked_by_admin")
    self.assertEqual(entries[0].details["revoked_by"], "admin-1")

    again = self.client.post(url, headers=INTERNAL_HEADERS)
    self.assertEqual(again.status_code, 400)
    self.assertLen(self.bot_calls_for("DELETE"), 1)

  def test_revoke_route_is_scoped_to_guild(self):
    self.seed(
        db.ShopSubscription(
            id="sub-row",
            guild_id=testing.GUILD_ID,
            shop_item_id="role-premium",
            discord_user_id=testing.USER_ID,
            status="active",
        )
    )
    response = self.client.post(
        f"/guilds/{testing.OTHER_GUILD_ID}/subscriptions/sub-row/revoke",
        headers=INTERNAL_HEADERS,
    )
    self.assertEqual(response.status_code, 404)
    self.assertEqual(self.get(db.ShopSubscription, "sub-row").status, "active")


if __name__ == "__main__":
  absltest.main()
