"""Tests for cooperative cancellation."""

from __future__ import annotations

import asyncio

import pytest

from diffscout.ai.orchestration.cancellation import CancellationToken, run_cancellable
from diffscout.ai.orchestration.errors import CancellationError


class TestCancellationToken:
    """Parent/child linking and state."""

    def test_cancel_sets_reason_once(self):
        token = CancellationToken()

        token.cancel("user pressed stop")
        token.cancel("second call is ignored")

        assert token.cancelled
        assert token.reason == "user pressed stop"
        with pytest.raises(CancellationError, match="user pressed stop"):
            token.raise_if_cancelled()

    def test_parent_cancels_children(self):
        parent = CancellationToken()
        child = parent.child()
        grandchild = child.child()

        parent.cancel("shutdown")

        assert child.cancelled and grandchild.cancelled
        assert grandchild.reason == "shutdown"

    def test_child_does_not_cancel_parent(self):
        parent = CancellationToken()
        child = parent.child()

        child.cancel("subagent timeout")

        assert child.cancelled
        assert not parent.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancellationToken()
        parent.cancel()

        assert parent.child().cancelled

    def test_detached_child_is_not_cancelled(self):
        parent = CancellationToken()
        child = parent.child()

        parent.detach(child)
        parent.detach(child)
        parent.cancel()

        assert not child.cancelled

    @pytest.mark.asyncio
    async def test_wait_resolves_on_cancel(self):
        token = CancellationToken()
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()
        await asyncio.wait_for(waiter, timeout=1.0)


class TestRunCancellable:
    """Racing work against a token."""

    @pytest.mark.asyncio
    async def test_returns_result_when_not_cancelled(self):
        async def work():
            return 42

        assert await run_cancellable(work(), CancellationToken()) == 42
        assert await run_cancellable(work(), None) == 42

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts_work(self):
        started = False

        async def work():
            nonlocal started
            started = True

        token = CancellationToken()
        token.cancel()

        with pytest.raises(CancellationError):
            await run_cancellable(work(), token)
        assert started is False

    @pytest.mark.asyncio
    async def test_cancel_mid_flight_aborts_work(self):
        token = CancellationToken()
        finished = False

        async def work():
            nonlocal finished
            await asyncio.sleep(5)
            finished = True

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel("stop")

        canceller = asyncio.ensure_future(cancel_soon())
        with pytest.raises(CancellationError, match="stop"):
            await asyncio.wait_for(run_cancellable(work(), token), timeout=2.0)
        await canceller
        assert finished is False

    @pytest.mark.asyncio
    async def test_work_errors_propagate(self):
        async def work():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await run_cancellable(work(), CancellationToken())
