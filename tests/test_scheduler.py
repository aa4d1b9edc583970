from datetime import timedelta

import pytest

from canvasworks.scheduler import next_step, run_sequence, send_step
from canvasworks.sequences import CANVAS_UPSELL, LEAD_FOLLOWUP, UPSELL

H = timedelta(hours=1)
UPSELL_T = CANVAS_UPSELL.thresholds
T0 = 1_000_000.0


@pytest.mark.parametrize("elapsed, last, expected", [
    (0.5 * H, 0, None),
    (1 * H, 0, 1),
    (23 * H, 1, None),
    (25 * H, 1, 2),
    (80 * H, 2, 3),
    (80 * H, 3, None),
    # a long gap still only moves one step
    (80 * H, 0, 1),
    (80 * H, 1, 2),
])
def test_next_step(elapsed, last, expected):
    assert next_step(elapsed, last, UPSELL_T) == expected


def test_next_step_zero_threshold():
    assert next_step(timedelta(0), 0, LEAD_FOLLOWUP.thresholds) == 1
    assert next_step(timedelta(hours=2), 1, LEAD_FOLLOWUP.thresholds) is None


async def _no_sleep(_):
    return None


async def _run(store, sender, at_hours, sequence=CANVAS_UPSELL):
    return await run_sequence(store, sender, sequence,
                              now=T0 + at_hours * 3600, delay_seconds=0,
                              sleep=_no_sleep)


async def test_upsell_cadence(store, sender):
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0,
                                 artifact_id="art_1")

    report = await _run(store, sender, 0.5)
    assert (report.sent, report.skipped) == (0, 1)

    for hours, step in ((1, 1), (25, 2), (80, 3)):
        report = await _run(store, sender, hours)
        assert report.sent == 1
        assert report.details == [
            {"email": "a@x.io", "action": "sent", "step": step}]
        r = await store.get_recipient(UPSELL, "a@x.io")
        assert r["last_step_sent"] == step
        assert r["last_sent_at"] == T0 + hours * 3600

    # finished recipients drop out of the cohort
    report = await _run(store, sender, 500)
    assert report.processed == 0
    assert [m["subject"] for m in sender.sent] == [
        "Your portrait, on canvas",
        "A canvas made to last",
        "Last chance: your portrait on canvas",
    ]
    assert "artifact_id=art_1" in sender.sent[0]["html"]
    assert "unsubscribe" in sender.sent[0]["html"]


async def test_same_run_twice_sends_once(store, sender):
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)
    await _run(store, sender, 2)
    report = await _run(store, sender, 2)
    assert report.sent == 0
    assert len(sender.sent) == 1


async def test_catch_up_is_one_step_per_run(store, sender):
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)
    await _run(store, sender, 80)
    await _run(store, sender, 80)
    r = await store.get_recipient(UPSELL, "a@x.io")
    assert r["last_step_sent"] == 2


async def test_converted_recipient_gets_nothing(store, sender):
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)
    await _run(store, sender, 1)
    await store.mark_converted("a@x.io", UPSELL)
    report = await _run(store, sender, 30)
    assert report.processed == 0
    assert len(sender.sent) == 1


async def test_failed_send_is_isolated_and_retried(store, sender):
    await store.enroll_recipient(UPSELL, "bad@x.io", enrolled_at=T0)
    await store.enroll_recipient(UPSELL, "good@x.io", enrolled_at=T0 + 1)
    sender.fail_for.add("bad@x.io")

    report = await _run(store, sender, 2)
    assert (report.processed, report.sent, report.errors) == (2, 1, 1)
    bad = await store.get_recipient(UPSELL, "bad@x.io")
    assert bad["last_step_sent"] == 0

    sender.fail_for.clear()
    report = await _run(store, sender, 3)
    assert report.sent == 1
    assert [m["to"] for m in sender.sent] == ["good@x.io", "bad@x.io"]


async def test_raising_recipient_does_not_stop_the_run(store, sender):
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)
    await store.enroll_recipient(UPSELL, "b@x.io", enrolled_at=T0 + 1)
    calls = []

    class Exploding(type(sender)):
        async def send(self, to, subject, html):
            calls.append(to)
            if to == "a@x.io":
                raise RuntimeError("connection reset")
            return await super().send(to, subject, html)

    boom = Exploding()
    report = await _run(store, boom, 2)
    assert calls == ["a@x.io", "b@x.io"]
    assert report.errors == 1
    assert report.sent == 1
    assert report.details[0]["error"] == "connection reset"


async def test_sleeps_between_sends(store, sender):
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)
    await store.enroll_recipient(UPSELL, "b@x.io", enrolled_at=T0)
    await store.enroll_recipient(UPSELL, "c@x.io", enrolled_at=T0 + 7200)
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    report = await run_sequence(store, sender, CANVAS_UPSELL,
                                now=T0 + 3600, delay_seconds=0.6,
                                sleep=sleep)
    assert report.sent == 2
    assert report.skipped == 1
    assert slept == [0.6, 0.6]


async def test_send_step_race_still_counts_as_sent(store, sender):
    r = await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)
    assert await store.advance_step(r["id"], expected=0, step=1)
    # ``r`` is a stale snapshot with last_step_sent == 0
    assert await send_step(store, sender, CANVAS_UPSELL, r, 1)
    again = await store.get_recipient(UPSELL, "a@x.io")
    assert again["last_step_sent"] == 1


def test_report_hides_details():
    from canvasworks.scheduler import RunReport
    rep = RunReport(sequence=UPSELL, processed=1, sent=1,
                    details=[{"email": "a@x.io"}])
    assert "details" not in rep.as_dict(with_details=False)
    assert rep.as_dict()["details"] == [{"email": "a@x.io"}]


async def test_wide_gap_between_steps(store, sender):
    from canvasworks import emails
    from canvasworks.sequences import Sequence
    slow = Sequence(name=UPSELL, thresholds=(H, 24 * H, 72 * H),
                    render=emails.upsell)
    await store.enroll_recipient(UPSELL, "a@x.io", enrolled_at=T0)

    for hours, step, sent in ((1, 1, 1), (25, 2, 1), (30, 2, 0), (80, 3, 1)):
        report = await _run(store, sender, hours, sequence=slow)
        assert report.sent == sent
        r = await store.get_recipient(UPSELL, "a@x.io")
        assert r["last_step_sent"] == step
    assert len(sender.sent) == 3


async def test_run_pages_past_recipients_waiting_on_later_steps(store, sender):
    # three older recipients are already at step 1 and not yet due for 2
    for i in range(3):
        r = await store.enroll_recipient(UPSELL, f"old{i}@x.io",
                                         enrolled_at=T0)
        await store.advance_step(r["id"], expected=0, step=1)
    await store.enroll_recipient(UPSELL, "new@x.io", enrolled_at=T0 + 60)

    report = await run_sequence(store, sender, CANVAS_UPSELL,
                                now=T0 + 2 * 3600, delay_seconds=0,
                                sleep=_no_sleep, page_size=2)
    assert (report.processed, report.skipped, report.sent) == (4, 3, 1)
    assert [m["to"] for m in sender.sent] == ["new@x.io"]


async def test_cohort_pages_do_not_overlap(store):
    for i in range(5):
        await store.enroll_recipient(UPSELL, f"r{i}@x.io", enrolled_at=T0)

    seen, after = [], None
    while True:
        page = await store.cohort(UPSELL, max_step=3, after=after, limit=2)
        seen += [r["email"] for r in page]
        if len(page) < 2:
            break
        after = (page[-1]["enrolled_at"], page[-1]["id"])
    assert sorted(seen) == [f"r{i}@x.io" for i in range(5)]
