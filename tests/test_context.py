import time

import pytest

from ebuslink.context import (
    ContextCanceled,
    ContextError,
    DeadlineExceeded,
    background,
    with_cancel,
    with_timeout,
)


def test_background_is_never_done():
    root = background()
    root.cancel()
    assert root.err() is None
    assert root.deadline() is None
    assert root.done() is False


def test_cancel_sets_canceled_error():
    ctx = with_cancel(background())
    assert ctx.err() is None
    ctx.cancel()
    assert isinstance(ctx.err(), ContextCanceled)
    assert ctx.done() is True


def test_cancel_propagates_to_children():
    parent = with_cancel(background())
    child = with_cancel(parent)
    grandchild = with_timeout(child, 60)
    assert child.done() is False
    assert grandchild.done() is False
    parent.cancel()
    assert child.done() is True
    assert grandchild.done() is True
    assert type(child.err()) is ContextCanceled
    assert type(grandchild.err()) is ContextCanceled


def test_child_cancel_does_not_touch_parent():
    parent = with_cancel(background())
    child = with_cancel(parent)
    child.cancel()
    assert parent.err() is None
    assert isinstance(child.err(), ContextCanceled)


def test_child_of_canceled_parent_starts_canceled():
    parent = with_cancel(background())
    parent.cancel()
    child = with_timeout(parent, 60)
    assert child.done() is True
    assert type(child.err()) is ContextCanceled


def test_timeout_expires():
    ctx = with_timeout(background(), 0.05)
    assert ctx.wait(5.0) is True
    error = ctx.err()
    assert isinstance(error, DeadlineExceeded)
    assert isinstance(error, TimeoutError)
    assert isinstance(error, ContextError)


def test_zero_timeout_is_expired_immediately():
    ctx = with_timeout(background(), 0)
    assert ctx.done() is True
    assert type(ctx.err()) is DeadlineExceeded


def test_wait_returns_false_when_live():
    ctx = with_cancel(background())
    assert ctx.wait(0.01) is False


def test_deadline_is_in_future():
    before = time.monotonic()
    ctx = with_timeout(background(), 30)
    deadline = ctx.deadline()
    assert deadline is not None and deadline > before
    ctx.cancel()


def test_child_keeps_earlier_parent_deadline():
    parent = with_timeout(background(), 10)
    child = with_timeout(parent, 100)
    assert child.deadline() == parent.deadline()
    assert with_cancel(parent).deadline() == parent.deadline()
    parent.cancel()


def test_parent_deadline_expires_child():
    parent = with_timeout(background(), 0.05)
    child = with_cancel(parent)
    assert child.wait(5.0) is True
    assert isinstance(child.err(), DeadlineExceeded)


def test_context_manager_cancels_on_exit():
    with with_cancel(background()) as ctx:
        assert ctx.err() is None
    assert isinstance(ctx.err(), ContextCanceled)


def test_cancel_after_deadline_keeps_first_error():
    ctx = with_timeout(background(), 0)
    ctx.cancel()
    assert ctx.done() is True
    assert type(ctx.err()) is DeadlineExceeded
    with pytest.raises(DeadlineExceeded):
        raise ctx.err()