from contextlib import contextmanager
from threading import Event
from threading import Thread
from typing import Iterator
from uuid import uuid4


def _set_event_after_time(event: Event, seconds: float) -> None:
    event.wait(seconds)
    event.set()


@contextmanager
def get_expiration_event(seconds: float) -> Iterator[Event]:
    event = Event()
    # Since we set `daemon=True`, we don't need to join the thread.
    Thread(target=_set_event_after_time, args=(event, seconds), name=f"timeout_thread_{uuid4()}", daemon=True).start()
    try:
        yield event

    finally:
        event.set()


def wait_unless_cancelled(seconds: float, cancel_event: Event) -> bool:
    """Sleeps for `seconds`, waking up early if `cancel_event` is set.

    Returns True if the full wait elapsed, False if it was cut short by a cancellation.
    """
    if seconds <= 0:
        return not cancel_event.is_set()
    return not cancel_event.wait(seconds)
