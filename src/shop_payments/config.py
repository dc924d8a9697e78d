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

"""Shared configuration and startup logic for the payments server."""

import contextlib
from typing import Optional

from absl import flags
from fastapi import FastAPI
from pydantic import BaseModel
from shop_payments import db

FLAGS = flags.FLAGS

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///shop_payments.db"

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string(
      "database_url", DEFAULT_DATABASE_URL, "SQLAlchemy async database URL"
  )
  flags.DEFINE_string(
      "base_url",
      "http://localhost:3000",
      "Public URL used for provider return and IPN callback URLs",
  )
  flags.DEFINE_string(
      "bot_api_url", "http://localhost:3002/api", "Internal bot API base URL"
  )
  flags.DEFINE_string(
      "internal_api_secret",
      None,
      "Shared secret for the bot API and the internal endpoints",
  )
  flags.DEFINE_float(
      "http_timeout", 10.0, "Timeout in seconds for outbound HTTP calls"
  )
  flags.DEFINE_integer(
      "webhook_tolerance",
      600,
      "Maximum age in seconds of a signed webhook timestamp",
  )
  flags.DEFINE_integer("port", None, "Port to run the server on")
except flags.DuplicateFlagError:
  pass


class ServerSettings(BaseModel):
  """Runtime settings, read from flags once at start-up."""

  database_url: str = DEFAULT_DATABASE_URL
  base_url: str = "http://localhost:3000"
  bot_api_url: str = "http://localhost:3002/api"
  internal_api_secret: Optional[str] = None
  http_timeout: float = 10.0
  webhook_tolerance: int = 600


def settings_from_flags() -> ServerSettings:
  """Builds settings from parsed absl flags."""
  return ServerSettings(
      database_url=FLAGS.database_url,
      base_url=FLAGS.base_url,
      bot_api_url=FLAGS.bot_api_url,
      internal_api_secret=FLAGS.internal_api_secret,
      http_timeout=FLAGS.http_timeout,
      webhook_tolerance=FLAGS.webhook_tolerance,
  )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Initializes the database for the lifetime of the app."""
  settings: ServerSettings = app.state.settings
  await db.manager.init_db(settings.database_url)
  yield
  await db.manager.close()
