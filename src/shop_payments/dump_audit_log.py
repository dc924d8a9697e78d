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

"""Utility script to dump the shop audit log from the database.

Entries are printed in insertion order with their JSON details. Output can be
narrowed to one guild or one action, e.g. `prefilled_pool_exhausted` to find
buyers who paid while a code pool was empty.

Usage:
  dump_audit_log --database_url=... [--guild_id=...] [--action=...]
"""

import asyncio
import json

from absl import app as absl_app
from absl import flags
from shop_payments import config
from shop_payments import db

FLAGS = flags.FLAGS
flags.DEFINE_string("guild_id", None, "Only show entries for this guild")
flags.DEFINE_string("action", None, "Only show entries with this action")


async def dump_audit_log() -> None:
  """Queries the database and prints audit entries."""
  await db.manager.init_db(config.FLAGS.database_url)
  try:
    async with db.manager.session_factory() as session:
      entries = await db.list_audit_entries(
          session, guild_id=FLAGS.guild_id, action=FLAGS.action
      )

    print("=== AUDIT LOG ===")
    if not entries:
      print("No audit entries found.")
      return

    for entry in entries:
      print(f"[{entry.created_at}] {entry.action} guild={entry.guild_id}")
      if entry.details:
        print(f"  Details: {json.dumps(entry.details, indent=2, sort_keys=True)}")
      print("-" * 40)
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the audit log dump script."""
  del argv
  asyncio.run(dump_audit_log())


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
