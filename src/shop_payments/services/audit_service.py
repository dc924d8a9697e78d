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

"""Append-only audit trail for support and dispute resolution."""

import functools
import logging
from typing import Any, Dict, Optional

from shop_payments import db
from shop_payments.services.hooks import PostCommitHooks
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class AuditLogger:
  """Writes audit entries in their own transaction."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def record(
      self,
      guild_id: Optional[str],
      action: str,
      details: Optional[Dict[str, Any]] = None,
  ) -> None:
    await db.append_audit_entry(self.session, guild_id, action, details)
    try:
      await self.session.commit()
    except Exception:
      await self.session.rollback()
      raise
    logger.info("Audit: %s guild=%s %s", action, guild_id, details or {})

  def queue(
      self,
      hooks: PostCommitHooks,
      guild_id: Optional[str],
      action: str,
      details: Optional[Dict[str, Any]] = None,
  ) -> None:
    """Defers `record` until the current transaction has committed."""
    hooks.add(
        f"audit:{action}",
        functools.partial(self.record, guild_id, action, details),
    )
