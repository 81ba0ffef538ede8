"""
Ordered post-update side effects.

An update queues its follow-up work (notifications, recurrence refill,
ancestor completion, reminder rescheduling) into an ``EffectPipeline``
instead of calling it inline. Effects run in the order added. A best-effort
effect that fails is logged and recorded and the pipeline moves on; a
structural effect that fails stops the pipeline and the error propagates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

log = structlog.get_logger()

EffectFn = Callable[[], Awaitable[Any]]


@dataclass
class Effect:
    name: str
    fn: EffectFn
    best_effort: bool = True


@dataclass
class EffectOutcome:
    name: str
    ok: bool
    result: Any = None
    error: Optional[BaseException] = field(default=None, repr=False)


class EffectPipeline:
    def __init__(self, session: Optional[AsyncSession] = None) -> None:
        self.session = session
        self._effects: list[Effect] = []

    def add(self, name: str, fn: EffectFn, *, best_effort: bool = True) -> EffectPipeline:
        self._effects.append(Effect(name=name, fn=fn, best_effort=best_effort))
        return self

    @property
    def names(self) -> list[str]:
        return [e.name for e in self._effects]

    def __len__(self) -> int:
        return len(self._effects)

    async def run(self) -> list[EffectOutcome]:
        outcomes: list[EffectOutcome] = []
        for effect in self._effects:
            try:
                result = await self._run_one(effect)
            except Exception as exc:
                if not effect.best_effort:
                    raise
                log.exception("effects.failed", effect=effect.name)
                outcomes.append(EffectOutcome(name=effect.name, ok=False, error=exc))
                continue
            outcomes.append(EffectOutcome(name=effect.name, ok=True, result=result))
        return outcomes

    async def _run_one(self, effect: Effect) -> Any:
        # Best-effort work runs in a savepoint so its failure leaves the
        # surrounding transaction usable.
        if self.session is None or not effect.best_effort:
            return await effect.fn()
        async with self.session.begin_nested():
            return await effect.fn()
