import threading
import time

import pytest

from round_printer.dispatch.loop import EventLoop, future_outcome


@pytest.fixture
def loop():
    lp = EventLoop(max_workers=2, name="test")
    lp.start()
    yield lp
    lp.stop()


def test_call_soon_runs_in_order_on_loop_thread(loop):
    seen = []
    done = threading.Event()
    for i in range(5):
        loop.call_soon(lambda i=i: seen.append((i, loop.in_loop_thread())))
    loop.call_soon(done.set)
    assert done.wait(2)
    assert seen == [(i, True) for i in range(5)]


def test_failing_callback_does_not_kill_loop(loop):
    done = threading.Event()

    def boom():
        raise RuntimeError("boom")

    loop.call_soon(boom)
    loop.call_soon(done.set)
    assert done.wait(2)
    assert loop.is_alive()


def test_submit_callback_runs_on_loop_thread(loop):
    result = {}
    done = threading.Event()

    def callback(future):
        result["value"], result["error"] = future_outcome(future)
        result["on_loop"] = loop.in_loop_thread()
        done.set()

    loop.submit(lambda a, b: a + b, 2, 3, callback=callback)
    assert done.wait(2)
    assert result == {"value": 5, "error": None, "on_loop": True}


def test_submit_error_is_reported_through_future(loop):
    errors = []
    done = threading.Event()

    def fail():
        raise ValueError("bad")

    loop.submit(fail, callback=lambda f: (errors.append(future_outcome(f)[1]), done.set()))
    assert done.wait(2)
    assert isinstance(errors[0], ValueError)


def test_cancelled_timer_never_runs(loop):
    fired = []
    handle = loop.call_later(0.05, fired.append, "late")
    handle.cancel()
    ran = threading.Event()
    loop.call_later(0.1, ran.set)
    assert ran.wait(2)
    time.sleep(0.05)
    assert fired == []


def test_run_sync_returns_value_and_raises(loop):
    assert loop.run_sync(lambda: loop.in_loop_thread()) is True
    with pytest.raises(KeyError):
        loop.run_sync(lambda: {}["missing"])


def test_run_sync_inline_when_not_running():
    lp = EventLoop()
    assert lp.run_sync(lambda x: x * 2, 4) == 8
    assert lp.status() == {"loop_started": False, "loop_alive": False, "loop_backlog": 0}
