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

"""Manual crypto-wallet payments.

There is no programmatic checkout: the payer is shown the configured wallet
addresses and an operator confirms the transfer through the verify endpoint.
"""

from typing import Mapping

from shop_payments.exceptions import ConfigurationError
from shop_payments.exceptions import InvalidRequestError
from shop_payments.models import ManualInstruction
from shop_payments.models import ManualResult
from shop_payments.models import ProviderConfig
from shop_payments.models import WebhookEvent
from shop_payments.providers.base import CheckoutRequest
from shop_payments.providers.base import PaymentProvider
from shop_payments.providers.base import ProviderCheckout

WALLET_KEYS = ("btc", "eth", "usdt_trc20", "usdt_erc20", "ltc", "bnb")


class DirectWalletProvider(PaymentProvider):
  """Returns wallet addresses as manual instructions."""

  name = "direct_wallet"

  async def create_checkout(
      self, config: ProviderConfig, request: CheckoutRequest
  ) -> ProviderCheckout:
    del request  # Instructions are the same for every payment.
    wallets = config.credentials or {}
    instructions = [
        ManualInstruction(
            label=key.upper().replace("_", " "), value=str(wallets[key])
        )
        for key in WALLET_KEYS
        if wallets.get(key)
    ]
    if not instructions:
      raise ConfigurationError("No wallet addresses are configured")
    if wallets.get("instructions"):
      instructions.append(
          ManualInstruction(
              label="Instructions", value=str(wallets["instructions"])
          )
      )

    return ProviderCheckout(
        result=ManualResult(
            title="Direct Wallet Payment",
            description=(
                "Send the payment to one of the wallet addresses below and"
                " submit the transaction ID for verification."
            ),
            instructions=instructions,
        )
    )

  async def verify_webhook(
      self,
      raw_body: bytes,
      headers: Mapping[str, str],
      config: ProviderConfig,
      tolerance: int,
  ) -> bool:
    del raw_body, headers, config, tolerance  # Unused.
    return False

  def parse_webhook(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookEvent:
    raise InvalidRequestError("direct_wallet payments have no webhooks")
