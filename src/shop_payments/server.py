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

"""Guild Shop Payments Server (Python/FastAPI)."""

import logging
import sys
from typing import Optional, Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from shop_payments import config
from shop_payments.exceptions import ShopError
from shop_payments.routes.payments import router as payments_router
from shop_payments.routes.subscriptions import router as subscriptions_router
from shop_payments.routes.webhooks import router as webhooks_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def shop_exception_handler(request: Request, exc: ShopError):
  """Handles shop exceptions and converts them to JSON responses."""
  del request  # Unused.
  if exc.status_code == 200:
    return JSONResponse(status_code=200, content={"received": True})
  return JSONResponse(
      status_code=exc.status_code,
      content={"detail": exc.message, "code": exc.code},
  )


def create_app(settings: Optional[config.ServerSettings] = None) -> FastAPI:
  """Builds the application around the given settings."""
  app = FastAPI(
      title="Guild Shop Payments Service",
      version="1.0.0",
      description="Checkout initiation and webhook fulfillment for guild shops",
      lifespan=config.lifespan,
  )
  app.state.settings = settings or config.ServerSettings()
  app.add_exception_handler(ShopError, shop_exception_handler)
  app.include_router(webhooks_router)
  app.include_router(payments_router)
  app.include_router(subscriptions_router)
  return app


def main(argv: Sequence[str]) -> None:
  """Main entry point for the payments server."""
  del argv  # Unused.

  if config.FLAGS.port is None:
    logger.error("--port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)
  if not config.FLAGS.internal_api_secret:
    logger.warning(
        "--internal_api_secret is not set; internal endpoints will refuse"
        " every request and bot API calls are unauthenticated."
    )

  app = create_app(config.settings_from_flags())
  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
