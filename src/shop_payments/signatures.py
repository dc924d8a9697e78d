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


"""Webhook signature verification.

Every scheme here is computed over the raw request body exactly as received.
Re-serializing a parsed body changes its bytes and breaks the comparison, so
callers must verify before parsing.

Schemes:
- Stripe-compatible: `t=<unix>,v1=<hex>` header, HMAC-SHA256 over
  `"{t}.{body}"`, with a freshness window on `t`. Checked by the Stripe SDK.
- Plain HMAC-SHA512 of the body (CoinPayments IPN, NOWPayments IPN).
"""

import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

import stripe

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 600


def header_value(headers: Mapping[str, str], *names: str) -> Optional[str]:
  """Returns the first present header among `names`, case-insensitively."""
  lowered = {k.lower(): v for k, v in headers.items()}
  for name in names:
    value = lowered.get(name.lower())
    if value:
      return value
  return None


def verify_stripe_signature(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
  """Verifies a Stripe-compatible `t=...,v1=...` signature header.

  Every `v1` entry in the header is tried, so events keep verifying while the
  endpoint's signing secret is being rolled.

  Args:
    raw_body: The unparsed request body.
    signature: The signature header value.
    secret: The endpoint signing secret.
    tolerance: Maximum distance of `t` from now, in seconds.

  Returns:
    True if the timestamp is fresh and a digest matches.
  """
  if not signature or not secret:
    return False
  try:
    payload = raw_body.decode("utf-8")
  except UnicodeDecodeError:
    return False

  try:
    stripe.WebhookSignature.verify_header(
        payload, signature, secret, tolerance=tolerance
    )
  except (stripe.SignatureVerificationError, ValueError) as e:
    logger.warning("Rejecting Stripe-signed webhook: %s", e)
    return False
  # The SDK only bounds the age of `t`; bound clock skew the other way too.
  timestamp = _signed_timestamp(signature)
  if timestamp is None or timestamp > time.time() + tolerance:
    logger.warning("Rejecting Stripe-signed webhook dated in the future")
    return False
  return True


def _signed_timestamp(signature: str) -> Optional[int]:
  for item in signature.split(","):
    key, _, value = item.strip().partition("=")
    if key == "t":
      try:
        return int(value)
      except ValueError:
        return None
  return None


def _hex_digests_equal(expected: str, received: str) -> bool:
  try:
    expected_bytes = bytes.fromhex(expected)
    received_bytes = bytes.fromhex(received)
  except ValueError:
    return False
  return hmac.compare_digest(expected_bytes, received_bytes)


def compute_hmac_sha512(secret: str, raw_body: bytes) -> str:
  return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_hmac_sha512(
    raw_body: bytes, signature: Optional[str], secret: Optional[str]
) -> bool:
  """Verifies a hex HMAC-SHA512 digest of the raw body."""
  if not signature or not secret:
    return False
  expected = compute_hmac_sha512(secret, raw_body)
  return _hex_digests_equal(expected, signature.strip().lower())
