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

"""Custom exceptions for the guild shop payments service."""


class ShopError(Exception):
  """Base class for all shop payment exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ConfigurationError(ShopError):
  """Raised when provider credentials are missing or malformed."""

  def __init__(self, message: str):
    super().__init__(message, code="PROVIDER_NOT_CONFIGURED", status_code=400)


class SignatureVerificationError(ShopError):
  """Raised when an inbound webhook fails its authenticity check."""

  def __init__(self, message: str = "Invalid signature"):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=401)


class ProviderAPIError(ShopError):
  """Raised when a payment provider rejects a request or is unreachable."""

  def __init__(self, provider: str, message: str):
    self.provider = provider
    super().__init__(
        f"{provider}: {message}", code="PROVIDER_API_ERROR", status_code=502
    )


class DuplicateEventError(ShopError):
  """Raised when a provider event has already been processed."""

  def __init__(self, provider: str, event_key: str):
    self.provider = provider
    self.event_key = event_key
    super().__init__(
        f"Event {event_key} from {provider} was already processed",
        code="DUPLICATE_EVENT",
        status_code=200,
    )


class FulfillmentError(ShopError):
  """Raised when granting or revoking an entitlement fails."""

  def __init__(self, message: str):
    super().__init__(message, code="FULFILLMENT_FAILED", status_code=500)


class TenantMismatchError(ShopError):
  """Raised when the guild in a signed payload differs from the URL guild."""

  def __init__(self, message: str = "Guild ID mismatch"):
    super().__init__(message, code="GUILD_MISMATCH", status_code=400)


class ResourceNotFoundError(ShopError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class PaymentStateError(ShopError):
  """Raised when a payment is not in a state that allows the action."""

  def __init__(self, message: str):
    super().__init__(message, code="PAYMENT_STATE_CONFLICT", status_code=409)


class InvalidRequestError(ShopError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)
