"""Time-gated drip scheduler.

A run walks the cohort of one sequence in enrollment order and sends each
recipient at most one step. ``last_step_sent`` only moves after a confirmed
send, so overlapping or crashed runs are safe to repeat.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional,
    Sequence as Seq,
)

from .helpers import now_ts
from .logs import get_logger
from .model.store import OrderStore
from .providers.email import NotificationSender
from .sequences import Sequence

log = get_logger(__name__)


def next_step(
    elapsed: timedelta, last_step: int, thresholds: Seq[timedelta]
) -> Optional[int]:
    """The step to send now, or None.

    Never returns more than ``last_step + 1``, however many thresholds have
    been crossed since the last run.
    """
    target = 1
    for step, threshold in enumerate(thresholds, start=1):
        if threshold <= elapsed:
            target = step
    if last_step >= target:
        return None
    step = last_step + 1
    if elapsed < thresholds[step - 1]:
        return None
    return step


@dataclass
class RunReport:
    sequence: str
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self, with_details: bool = True) -> Dict[str, Any]:
        out = {
            "sequence": self.sequence,
            "processed": self.processed,
            "sent": self.sent,
            "skipped": self.skipped,
            "errors": self.errors,
        }
        if with_details:
            out["details"] = self.details
        return out


async def send_step(
    store: OrderStore, sender: NotificationSender, sequence: Sequence,
    recipient: Dict[str, Any], step: int, now: Optional[float] = None,
) -> bool:
    """Send one step and record it. False when the send failed."""
    msg = sequence.render(step, recipient)
    result = await sender.send(recipient["email"], msg.subject, msg.html)
    if not result.success:
        log.warning("drip_send_failed", sequence=sequence.name, step=step,
                    email=recipient["email"], error=result.error)
        return False
    advanced = await store.advance_step(
        recipient["id"], expected=recipient["last_step_sent"], step=step,
        at=now,
    )
    if not advanced:
        # a concurrent run got there first; our send was a duplicate
        log.warning("drip_step_raced", sequence=sequence.name, step=step,
                    email=recipient["email"])
    log.info("drip_sent", sequence=sequence.name, step=step,
             email=recipient["email"], message_id=result.message_id)
    return True


async def _cohort(
    store: OrderStore, sequence: Sequence, page_size: int,
) -> AsyncIterator[Dict[str, Any]]:
    after = None
    while True:
        page = await store.cohort(sequence.name, max_step=sequence.steps,
                                  after=after, limit=page_size)
        for recipient in page:
            yield recipient
        if len(page) < page_size:
            return
        last = page[-1]
        after = (last["enrolled_at"], last["id"])


async def run_sequence(
    store: OrderStore,
    sender: NotificationSender,
    sequence: Sequence,
    *,
    now: Optional[float] = None,
    delay_seconds: float = 0.6,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    page_size: int = 500,
) -> RunReport:
    now = now_ts() if now is None else now
    report = RunReport(sequence=sequence.name)
    log.info("drip_run_started", sequence=sequence.name)

    async for recipient in _cohort(store, sequence, page_size):
        report.processed += 1
        email = recipient["email"]
        try:
            elapsed = timedelta(seconds=now - recipient["enrolled_at"])
            step = next_step(elapsed, recipient["last_step_sent"],
                             sequence.thresholds)
            if step is None:
                report.skipped += 1
                continue

            if await send_step(store, sender, sequence, recipient, step,
                               now=now):
                report.sent += 1
                report.details.append(
                    {"email": email, "action": "sent", "step": step})
            else:
                report.errors += 1
                report.details.append(
                    {"email": email, "action": "error", "step": step})
            if delay_seconds:
                await sleep(delay_seconds)
        except Exception as exc:
            # one recipient never takes the rest of the cohort down
            report.errors += 1
            report.details.append(
                {"email": email, "action": "error", "error": str(exc)})
            log.exception("drip_recipient_failed", sequence=sequence.name,
                          email=email)

    log.info("drip_run_finished", **report.as_dict(with_details=False))
    return report
