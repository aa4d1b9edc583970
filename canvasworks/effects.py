"""Idempotent effect runner.

Each side effect of an inbound event is keyed by (effect_name, event_id) so
that a redelivered event skips what already ran and retries only what failed.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from .infra.timings import timeit
from .logs import get_logger

log = get_logger(__name__)

SKIPPED = "skipped"
DONE = "ok"
FAILED = "error"


class EffectRecords(Protocol):
    async def seen(self, effect_name: str, event_id: str) -> bool: ...

    async def record(self, effect_name: str, event_id: str) -> None: ...


async def run_once(
    store: EffectRecords,
    event_id: str,
    effect_name: str,
    fn: Callable[[], Awaitable[Any]],
) -> bool:
    """Run ``fn`` unless it already completed for ``event_id``.

    Returns True when ``fn`` ran now, False when it was skipped. Errors from
    ``fn`` propagate and leave no record, so the next delivery retries.
    """
    if await store.seen(effect_name, event_id):
        log.debug("effect_skipped", effect=effect_name, event_id=event_id)
        return False

    async with timeit(f"effect.{effect_name}"):
        await fn()
    await store.record(effect_name, event_id)
    log.info("effect_completed", effect=effect_name, event_id=event_id)
    return True


async def attempt(
    store: EffectRecords,
    event_id: str,
    effect_name: str,
    fn: Callable[[], Awaitable[Any]],
    outcomes: dict,
) -> bool:
    """run_once, but log and swallow the failure into ``outcomes``.

    Used by the webhook path, where one failing effect must not stop the
    others nor the acknowledgment.
    """
    try:
        ran = await run_once(store, event_id, effect_name, fn)
    except Exception as exc:
        log.exception(
            "effect_failed", effect=effect_name, event_id=event_id,
            error=str(exc),
        )
        outcomes[effect_name] = FAILED
        return False
    outcomes[effect_name] = DONE if ran else SKIPPED
    return True
