from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OptimisticUpdate(Generic[T]):
    """
    Tentative write with a compensating restore.

        async with OptimisticUpdate(snapshot=..., apply=..., restore=...) as upd:
            ...verify against the authority...
            upd.commit()

    On entry the prior state is captured with ``snapshot()`` and the tentative
    state is written with ``apply()``. Leaving the block without ``commit()``
    (or with an exception) calls ``restore(prior)``. Exceptions from the block
    are never suppressed.
    """

    def __init__(
        self,
        *,
        snapshot: Callable[[], Awaitable[T]],
        apply: Callable[[], Awaitable[Any]],
        restore: Callable[[T], Awaitable[Any]],
    ):
        self._snapshot = snapshot
        self._apply = apply
        self._restore = restore
        self.prior: Optional[T] = None
        self.committed = False
        self.rolled_back = False

    def commit(self) -> None:
        self.committed = True

    async def __aenter__(self) -> "OptimisticUpdate[T]":
        self.prior = await self._snapshot()
        await self._apply()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None and self.committed:
            return False
        try:
            await self._restore(self.prior)
            self.rolled_back = True
        except Exception:
            if exc_type is None:
                raise
            # исходную ошибку не теряем
            logger.exception("Restore after failed optimistic update also failed")
        return False
