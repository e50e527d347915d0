"""
Compensating transactions for multi-step operations that span the database
and external services.

Each forward step is paired with a named compensation. When a step fails,
the compensations of the steps that already completed run in reverse order
and the original error is re-raised with the failing step attached.
"""

import inspect
import logging
from typing import Any, Callable, Optional

from ..errors import AppError

logger = logging.getLogger(__name__)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class CompletedStep:
    def __init__(self, name: str, result: Any, compensation: Optional[Callable[[Any], Any]]):
        self.name = name
        self.result = result
        self.compensation = compensation


class CompensatingTransaction:
    def __init__(self, name: str):
        self.name = name
        self.completed: list[CompletedStep] = []
        self.compensation_failures: list[tuple[str, Exception]] = []

    async def step(
        self,
        name: str,
        action: Callable[[], Any],
        compensation: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Run a forward step. Sync and async callables are both accepted."""
        try:
            result = await _maybe_await(action())
        except Exception as e:
            if isinstance(e, AppError) and not e.step:
                e.step = name
            logger.warning(f"⚠️ {self.name}: step '{name}' failed ({e}), compensating")
            await self.compensate()
            raise

        self.completed.append(CompletedStep(name, result, compensation))
        return result

    async def compensate(self) -> None:
        """Undo completed steps, newest first. Compensation errors are logged, not raised."""
        while self.completed:
            done = self.completed.pop()
            if done.compensation is None:
                continue
            try:
                await _maybe_await(done.compensation(done.result))
                logger.info(f"↩️ {self.name}: compensated '{done.name}'")
            except Exception as e:
                self.compensation_failures.append((done.name, e))
                logger.error(f"❌ {self.name}: compensation for '{done.name}' failed: {e}")
