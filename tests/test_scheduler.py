import pytest

from conftest import ready

from round_printer.core.errors import MalformedInput, TransientNetworkError
from round_printer.core.models import Settings, Trigger
from round_printer.dispatch.backend import RoundQuery
from round_printer.dispatch.scheduler import FetchScheduler
from round_printer.printing.transmit import TransmitResult


@pytest.fixture
def sched(fake_loop, backend, transmitter, printer):
    printed, failed = [], []
    s = FetchScheduler(
        fake_loop,
        transmitter,
        poll_delay=2.0,
        retry_delay=3.0,
        on_printed=printed.append,
        on_print_failed=failed.append,
    )
    s.bind(backend, printer)
    s.settings = Settings(name="Cafe Kigali")
    s.printed_events = printed
    s.failed_prints = failed
    return s


def _fetch_jobs(loop):
    return loop.jobs_named("next_printable_round")


def test_queue_is_noop_while_inactive(sched, fake_loop):
    sched.queue({"latest": 1})
    assert fake_loop.jobs == []
    assert not sched.session.in_flight


def test_queue_is_noop_without_active_printer(sched, fake_loop, backend):
    sched.bind(backend, None)
    sched.resume()
    assert fake_loop.jobs == []


def test_burst_while_in_flight_yields_one_follow_up_with_latest_trigger(sched, fake_loop, backend):
    sched.resume()
    assert len(_fetch_jobs(fake_loop)) == 1

    sched.queue({"latest": 1})
    sched.queue()
    sched.queue({"latest": 3, "content": "K"})
    assert len(_fetch_jobs(fake_loop)) == 1
    assert sched.session.pending_trigger == Trigger(latest="3", content="K")

    fake_loop.run_job(_fetch_jobs(fake_loop)[0])
    # The coalesced trigger runs now, ahead of the idle delay
    assert len(_fetch_jobs(fake_loop)) == 1
    assert fake_loop.pending_timers() == []
    assert not sched.session.has_pending

    fake_loop.run_job(_fetch_jobs(fake_loop)[0])
    assert backend.fetches == [None, Trigger(latest="3", content="K")]


def test_round_printed_once_then_acked_and_requeued(sched, fake_loop, backend, transmitter):
    backend.rounds = [ready(11)]
    sched.resume()
    fake_loop.run_job(_fetch_jobs(fake_loop)[0])

    # Transmission in progress: no fetch may start, triggers are coalesced
    assert sched.session.in_flight
    sched.queue()
    assert _fetch_jobs(fake_loop) == []

    fake_loop.run_jobs()
    assert len(transmitter.sent) == 1
    assert backend.acks == [11]
    assert sched.printed_events == [Trigger(latest="11", content="KB")]
    assert len(backend.fetches) == 2
    # Nothing more to print: next poll after the idle delay
    assert [h.when for h in fake_loop.pending_timers()] == [2.0]


def test_stale_round_is_acked_and_requeued_immediately(sched, fake_loop, backend, transmitter):
    backend.rounds = [RoundQuery(ready=False, stale_round_id=7)]
    sched.resume()
    fake_loop.run_job(_fetch_jobs(fake_loop)[0])

    ack_jobs = fake_loop.jobs_named("ack_printed")
    assert len(ack_jobs) == 1
    fake_loop.run_job(ack_jobs[0])

    assert backend.acks == [7]
    assert len(_fetch_jobs(fake_loop)) == 1
    assert fake_loop.pending_timers() == []
    assert transmitter.sent == []


def test_network_error_retries_after_error_delay_once(sched, fake_loop, backend):
    backend.rounds = [TransientNetworkError("connection refused")]
    sched.resume({"latest": 5})
    fake_loop.run_jobs()

    assert sched.session.last_error == "connection refused"
    assert [h.when for h in fake_loop.pending_timers()] == [3.0]

    fake_loop.advance(2.9)
    assert _fetch_jobs(fake_loop) == []
    fake_loop.advance(0.1)
    jobs = _fetch_jobs(fake_loop)
    assert len(jobs) == 1
    # The retry reuses the trigger
    assert jobs[0].args == (Trigger(latest="5"),)


def test_malformed_round_counts_as_failed_attempt(sched, fake_loop, backend):
    backend.rounds = [MalformedInput("round payload invalid")]
    sched.resume()
    fake_loop.run_jobs()
    assert [h.when for h in fake_loop.pending_timers()] == [3.0]


def test_idle_poll_reuses_trigger(sched, fake_loop, backend):
    sched.resume({"content": "K"})
    fake_loop.run_jobs()
    assert [h.when for h in fake_loop.pending_timers()] == [2.0]
    fake_loop.advance(2.0)
    assert _fetch_jobs(fake_loop)[0].args == (Trigger(content="K"),)


def test_queue_cancels_pending_retry_timer(sched, fake_loop, backend):
    sched.resume()
    fake_loop.run_jobs()
    timer = fake_loop.pending_timers()[0]
    sched.queue()
    assert timer.cancelled
    assert len(_fetch_jobs(fake_loop)) == 1


def test_transmit_failure_preserves_payload_and_idles(sched, fake_loop, backend, transmitter):
    backend.rounds = [ready(21)]
    transmitter.results = [TransmitResult(False, "paper out")]
    sched.resume()
    fake_loop.run_jobs()

    assert len(sched.failed_prints) == 1
    failed = sched.failed_prints[0]
    assert failed.round_id == 21
    assert failed.reason == "paper out"
    assert failed.instructions == transmitter.sent[0][0]
    assert failed.content == "KB"
    assert backend.acks == []
    assert fake_loop.jobs == []
    assert fake_loop.pending_timers() == []
    assert not sched.session.in_flight


def test_transmit_exception_is_reported_as_failure(fake_loop, backend, printer):
    failed = []

    def broken(instructions, printer):
        raise OSError("socket closed")

    s = FetchScheduler(fake_loop, broken, on_print_failed=failed.append)
    s.bind(backend, printer)
    backend.rounds = [ready(2)]
    s.resume()
    fake_loop.run_jobs()
    assert [f.reason for f in failed] == ["socket closed"]


def test_stop_while_fetching_schedules_nothing(sched, fake_loop, backend, transmitter):
    backend.rounds = [ready(1)]
    sched.resume()
    sched.stop()
    sched.stop()
    fake_loop.run_jobs()

    assert transmitter.sent == []
    assert fake_loop.pending_timers() == []
    assert not sched.session.in_flight
    assert not sched.session.active


def test_stop_cancels_retry_timer(sched, fake_loop, backend):
    backend.rounds = [TransientNetworkError("down")]
    sched.resume()
    fake_loop.run_jobs()
    sched.stop()
    fake_loop.advance(60)
    assert fake_loop.jobs == []


def test_resume_during_stale_fetch_runs_fresh_fetch(sched, fake_loop, backend, transmitter):
    backend.rounds = [ready(1)]
    sched.resume()
    sched.stop()
    sched.resume({"latest": 9})
    fake_loop.run_job(_fetch_jobs(fake_loop)[0])

    # The stale result is dropped; the round will come back from the fresh fetch
    assert transmitter.sent == []
    assert _fetch_jobs(fake_loop)[0].args == (Trigger(latest="9"),)


def test_stop_during_transmit_still_acks(sched, fake_loop, backend):
    backend.rounds = [ready(4)]
    sched.resume()
    fake_loop.run_job(_fetch_jobs(fake_loop)[0])
    sched.stop()
    fake_loop.run_jobs()
    assert backend.acks == [4]
    assert len(backend.fetches) == 1

def test_held_round_is_skipped_until_released(sched, fake_loop, backend, transmitter):
    sched.hold(8)
    backend.rounds = [ready(8)]
    sched.resume()
    fake_loop.run_jobs()
    assert transmitter.sent == []
    assert [h.when for h in fake_loop.pending_timers()] == [2.0]

    sched.release("8")
    backend.rounds = [ready(8)]
    fake_loop.advance(2.0)
    fake_loop.run_job(_fetch_jobs(fake_loop)[0])
    assert sched.is_printing(8)
    fake_loop.run_jobs()
    assert not sched.is_printing(8)
    assert backend.acks == [8]



def test_snapshot(sched, fake_loop):
    sched.resume()
    sched.queue({"latest": 2})
    snap = sched.snapshot()
    assert snap["active"] and snap["in_flight"] and snap["pending"]
    assert snap["pending_trigger"] == {"latest": "2", "content": None}
    assert snap["printer"] == "Kitchen"
