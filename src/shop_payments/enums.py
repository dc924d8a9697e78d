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

"""Enumerations for the guild shop payments service.

This module defines the states of payments, orders and subscriptions, and the
strategies a shop item can be delivered with.
"""

import enum


class ProviderName(str, enum.Enum):
  PAYPAL = "paypal"
  STRIPE = "stripe"
  COINPAYMENTS = "coinpayments"
  NOWPAYMENTS = "nowpayments"
  DIRECT_WALLET = "direct_wallet"


class PaymentStatus(str, enum.Enum):
  PENDING = "pending"
  COMPLETED = "completed"
  FAILED = "failed"


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PAID = "paid"
  FAILED = "failed"


class DeliveryType(str, enum.Enum):
  ROLE = "role"
  CODE = "code"
  PREFILLED = "prefilled"
  SUBSCRIPTION = "subscription"
  NONE = "none"


class BillingType(str, enum.Enum):
  ONE_TIME = "one_time"
  SUBSCRIPTION = "subscription"


class SubscriptionStatus(str, enum.Enum):
  ACTIVE = "active"
  CANCELLED = "cancelled"
  EXPIRED = "expired"


class EventKind(str, enum.Enum):
  """Provider-independent classification of an inbound webhook."""

  PAYMENT_COMPLETED = "payment_completed"
  PAYMENT_FAILED = "payment_failed"
  PAYMENT_PENDING = "payment_pending"
  # The buyer approved; funds move only once the order is captured.
  PAYMENT_APPROVED = "payment_approved"
  SUBSCRIPTION_UPDATED = "subscription_updated"
  SUBSCRIPTION_DELETED = "subscription_deleted"
  IGNORED = "ignored"
