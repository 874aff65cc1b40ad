import threading
from types import TracebackType
from typing import Callable, Optional, Type

"""Wall-clock deadline for a single COPY operation.

A :class:`Deadline` races a ``threading.Timer`` against the completion of
the guarded operation. Whichever side reaches the lock first wins:

* the timer fires first: ``expired`` becomes True and ``on_expire`` runs,
  which must tear the stream down so the blocked call returns;
* the operation calls :meth:`settle` first: the timer is cancelled and
  ``on_expire`` never runs.

When the timer wins and the operation has still not settled ``grace``
seconds later, ``on_overrun`` runs as a harder teardown (closing the
socket under a call that ignored the first one).
"""

DEFAULT_GRACE_SECONDS = 5.0


class Deadline:
    def __init__(
        self,
        seconds: float,
        on_expire: Callable[[], None],
        on_overrun: Optional[Callable[[], None]] = None,
        grace: float = DEFAULT_GRACE_SECONDS,
    ):
        # float() so a bad value fails here, not inside the timer thread
        self.seconds = float(seconds)
        self.grace = float(grace)
        self._on_expire = on_expire
        self._on_overrun = on_overrun
        self._lock = threading.Lock()
        self._settled = False
        self._finished = False
        self._expired = False
        self._overrunning = False
        self._expire_done = threading.Event()
        self._overrun_done = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self._grace_timer: Optional[threading.Timer] = None

    @property
    def expired(self) -> bool:
        with self._lock:
            return self._expired

    def start(self) -> None:
        self._timer = threading.Timer(self.seconds, self._fire)
        self._timer.daemon = True
        self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._settled:
                return
            self._settled = True
            self._expired = True

        if self._on_overrun is not None:
            # armed first: on_expire itself may block (e.g. a cancel
            # request to an unreachable server)
            self._grace_timer = threading.Timer(self.grace, self._overrun)
            self._grace_timer.daemon = True
            self._grace_timer.start()
        try:
            self._on_expire()
        finally:
            self._expire_done.set()

    def _overrun(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._overrunning = True
        try:
            if self._on_overrun is not None:
                self._on_overrun()
        finally:
            self._overrun_done.set()

    def settle(self) -> bool:
        """
        Marks the guarded operation as finished and disarms the timers.

        Returns True when the deadline had already expired, i.e. the
        timeout won the race. In that case it first waits (at most
        ``grace`` seconds) for the teardown callbacks to complete, so
        none of them runs against statements issued afterwards.
        """
        with self._lock:
            self._settled = True
            self._finished = True
            expired = self._expired
            overrunning = self._overrunning
        self.cancel()
        if expired:
            self._expire_done.wait(self.grace)
        if overrunning:
            self._overrun_done.wait(self.grace)
        return expired

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        if self._grace_timer is not None:
            self._grace_timer.cancel()

    def __enter__(self) -> "Deadline":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.settle()
