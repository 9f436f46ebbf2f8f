"""Process-local tag name to id cache that never trusts uncommitted ids."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postcache.core.database import dialect_insert
from postcache.schema import Tag

logger = logging.getLogger(__name__)


class TagCache:
  """Resolve tag names to surrogate ids, inserting unknown tags on demand.

  Ids learned inside an open transaction stay pending until commit() so a
  rolled-back insert never leaves a phantom id behind. Access is not locked;
  it relies on a single event loop driving every caller.
  """

  def __init__(self) -> None:
    self._committed: dict[str, int] = {}
    self._pending: dict[str, int] = {}

  def __len__(self) -> int:
    return len(self._committed)

  def get(self, name: str) -> int | None:
    return self._pending.get(name, self._committed.get(name))

  def commit(self) -> None:
    self._committed.update(self._pending)
    self._pending.clear()

  def rollback(self) -> None:
    self._pending.clear()

  def savepoint(self) -> dict[str, int]:
    return dict(self._pending)

  def rollback_to(self, saved: dict[str, int]) -> None:
    self._pending = dict(saved)

  async def _select(self, session: AsyncSession, names: Iterable[str]) -> dict[str, int]:
    result = await session.execute(select(Tag.name, Tag.id).where(Tag.name.in_(list(names))))
    return {name: tag_id for name, tag_id in result.all()}

  async def resolve(self, session: AsyncSession, names: Iterable[str]) -> dict[str, int]:
    """Return {name: id} for every name, creating tags that do not exist yet."""
    wanted = set(names)
    resolved = {name: tag_id for name in wanted if (tag_id := self.get(name)) is not None}
    missing = wanted - resolved.keys()
    if not missing:
      return resolved

    found = await self._select(session, missing)
    missing -= found.keys()

    if missing:
      stmt = dialect_insert(session, Tag).values([{"name": name} for name in sorted(missing)])
      await session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
      inserted = await self._select(session, missing)
      unresolved = missing - inserted.keys()
      if unresolved:
        raise RuntimeError(f"Tags missing after insert: {sorted(unresolved)}")
      logger.debug("Created %d new tags", len(inserted))
      found.update(inserted)

    # Rows selected from the store may still be uncommitted by this transaction.
    self._pending.update(found)
    resolved.update(found)
    return resolved
