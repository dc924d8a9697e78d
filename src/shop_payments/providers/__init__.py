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

"""Payment provider registry."""

from typing import Dict, Type

import httpx
from shop_payments.exceptions import InvalidRequestError
from shop_payments.providers.base import CheckoutRequest
from shop_payments.providers.base import PaymentProvider
from shop_payments.providers.base import ProviderCheckout
from shop_payments.providers.base import ProviderSubscription
from shop_payments.providers.coinpayments import CoinPaymentsProvider
from shop_payments.providers.direct_wallet import DirectWalletProvider
from shop_payments.providers.nowpayments import NowPaymentsProvider
from shop_payments.providers.paypal import PayPalProvider
from shop_payments.providers.stripe_checkout import StripeProvider

PROVIDERS: Dict[str, Type[PaymentProvider]] = {
    cls.name: cls
    for cls in (
        PayPalProvider,
        StripeProvider,
        CoinPaymentsProvider,
        NowPaymentsProvider,
        DirectWalletProvider,
    )
}


def get_provider(name: str, http_client: httpx.AsyncClient) -> PaymentProvider:
  """Builds the adapter registered under `name`."""
  provider_cls = PROVIDERS.get(name)
  if provider_cls is None:
    raise InvalidRequestError(f"Unsupported payment provider: {name}")
  return provider_cls(http_client)


__all__ = [
    "CheckoutRequest",
    "PaymentProvider",
    "ProviderCheckout",
    "ProviderSubscription",
    "PROVIDERS",
    "get_provider",
]
