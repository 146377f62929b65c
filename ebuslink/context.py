"""Cancellation and deadline scopes for bus operations."""

from __future__ import annotations

import threading
import time
from typing import Optional


class ContextError(Exception):
    """Base class of context termination errors."""


class ContextCanceled(ContextError):
    """The context was canceled."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(ContextError, TimeoutError):
    """The context deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


class Context:
    """A cancellation scope with an optional monotonic deadline.

    Build instances with background(), with_cancel() or with_timeout().
    """

    def __init__(
        self,
        *,
        parent: Optional["Context"] = None,
        deadline: Optional[float] = None,
        cancelable: bool = True,
    ) -> None:
        self._parent = parent
        self._deadline = deadline
        self._cancelable = cancelable
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._error_type: Optional[type] = None
        self._children: set[Context] = set()
        self._timer: Optional[threading.Timer] = None

    def _start(self, own_timer: bool) -> None:
        parent = self._parent
        if parent is not None and parent._cancelable:
            parent_error = parent._attach(self)
            if parent_error is not None:
                self._cancel(parent_error)
                return
        if not own_timer or self._deadline is None:
            return
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            self._cancel(DeadlineExceeded)
            return
        with self._lock:
            if self._error_type is not None:
                return
            self._timer = threading.Timer(remaining, self._cancel, args=(DeadlineExceeded,))
            self._timer.daemon = True
            self._timer.start()

    def _attach(self, child: "Context") -> Optional[type]:
        with self._lock:
            if self._error_type is not None:
                return self._error_type
            self._children.add(child)
            return None

    def _detach(self, child: "Context") -> None:
        with self._lock:
            self._children.discard(child)

    def _cancel(self, error_type: type) -> None:
        with self._lock:
            if self._error_type is not None:
                return
            self._error_type = error_type
            children = list(self._children)
            self._children.clear()
            timer, self._timer = self._timer, None
            self._event.set()
        if timer is not None:
            timer.cancel()
        for child in children:
            child._cancel(error_type)
        if self._parent is not None and self._parent._cancelable:
            self._parent._detach(self)

    def cancel(self) -> None:
        """Cancel this context and all contexts derived from it."""
        if self._cancelable:
            self._cancel(ContextCanceled)

    def err(self) -> Optional[ContextError]:
        """Return the termination error, or None while the context is live."""
        with self._lock:
            error_type = self._error_type
        if error_type is None and self._deadline is not None and time.monotonic() >= self._deadline:
            self._cancel(DeadlineExceeded)
            with self._lock:
                error_type = self._error_type
        return error_type() if error_type is not None else None

    def deadline(self) -> Optional[float]:
        """Return the deadline as a time.monotonic() value, or None."""
        return self._deadline

    def done(self) -> bool:
        """Report whether the context has been canceled or has expired."""
        return self.err() is not None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context is done or timeout seconds pass."""
        return self._event.wait(timeout) or self.done()

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


_BACKGROUND = Context(cancelable=False)


def background() -> Context:
    """Return the root context: never canceled, no deadline."""
    return _BACKGROUND


def with_cancel(parent: Context) -> Context:
    """Return a child context that can be canceled independently."""
    child = Context(parent=parent, deadline=parent.deadline())
    child._start(own_timer=False)
    return child


def with_timeout(parent: Context, timeout: float) -> Context:
    """Return a child context that expires after timeout seconds."""
    deadline = time.monotonic() + timeout
    parent_deadline = parent.deadline()
    own_timer = parent_deadline is None or deadline < parent_deadline
    if not own_timer:
        deadline = parent_deadline
    child = Context(parent=parent, deadline=deadline)
    child._start(own_timer=own_timer)
    return child