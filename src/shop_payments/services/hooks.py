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

"""Side effects that run only after a state transition has committed.

Audit entries and announcements are queued while a webhook is processed and
run once the authoritative transaction is durable. A failing hook is logged
and never reaches the caller, so it cannot be confused with a failed
fulfillment.
"""

import logging
from typing import Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[None]]


class PostCommitHooks:
  """An ordered list of best-effort callbacks."""

  def __init__(self) -> None:
    self._hooks: List[Tuple[str, Hook]] = []

  def add(self, name: str, hook: Hook) -> None:
    self._hooks.append((name, hook))

  def clear(self) -> None:
    """Drops queued hooks, e.g. after the transaction rolled back."""
    self._hooks.clear()

  def __len__(self) -> int:
    return len(self._hooks)

  async def run(self) -> None:
    hooks, self._hooks = self._hooks, []
    for name, hook in hooks:
      try:
        await hook()
      except Exception:  # pylint: disable=broad-exception-caught
        logger.exception("Post-commit hook %s failed", name)
