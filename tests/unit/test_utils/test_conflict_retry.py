"""Unit tests for the retry decorators."""
from __future__ import annotations

import pytest

from nested_tree.core.database import ConcurrencyConflictError, InvalidOperationError
from nested_tree.core.settings import TreeSettings
from nested_tree.utils.retry import RetryError, RetryStrategy, retry, retry_on_conflict


@pytest.mark.unit
class TestRetryDecorator:
    """Test suite for retry decorator."""

    @pytest.mark.asyncio
    async def test_retry_succeeds_first_attempt(self):
        """Test that retry decorator doesn't retry on success."""
        call_count = 0

        @retry(max_attempts=3)
        async def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_func() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_retries(self):
        """Test that retry decorator retries until success."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.01)
        async def eventually_successful():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("Not yet")
            return "success"

        assert await eventually_successful() == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_retry_fails_after_max_attempts(self):
        """Test that retry raises RetryError after max attempts."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.01)
        async def always_fails():
            nonlocal call_count
            call_count += 1
            raise ValueError("Always fails")

        with pytest.raises(RetryError) as exc_info:
            await always_fails()

        assert call_count == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, ValueError)
        assert "after 3 attempts" in str(exc_info.value)
        assert exc_info.value.statistics.exceptions == ["ValueError"] * 3

    @pytest.mark.asyncio
    async def test_retry_only_retries_specified_exceptions(self):
        """Test that retry only retries specified exception types."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.01, exceptions=(ValueError,))
        async def raises_type_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retryable")

        with pytest.raises(TypeError):
            await raises_type_error()

        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_if_overrides_exception_types(self):
        """Test that a retry_if predicate decides on its own."""
        call_count = 0

        @retry(max_attempts=4, initial_delay=0.0, retry_if=lambda e: "again" in str(e))
        async def flaky():
            nonlocal call_count
            call_count += 1
            raise RuntimeError("again" if call_count < 2 else "stop")

        with pytest.raises(RuntimeError, match="stop"):
            await flaky()

        assert call_count == 2

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        """Test that on_retry sees every failed attempt but the last."""
        seen: list[int] = []

        @retry(max_attempts=3, initial_delay=0.0, on_retry=lambda e, attempt: seen.append(attempt))
        async def always_fails():
            raise ValueError("nope")

        with pytest.raises(RetryError):
            await always_fails()

        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_stop_after_delay(self):
        """Test that the elapsed-time budget ends retrying early."""
        call_count = 0

        @retry(max_attempts=10, initial_delay=0.0, stop_after_delay=0.0)
        async def always_fails():
            nonlocal call_count
            call_count += 1
            raise ValueError("nope")

        with pytest.raises(RetryError):
            await always_fails()

        assert call_count == 1


@pytest.mark.unit
class TestRetryStrategy:
    """Test suite for delay calculation and configuration."""

    def test_exponential_delay_without_jitter(self):
        strategy = RetryStrategy(initial_delay=1.0, exponential_base=2.0, max_delay=5.0, jitter=False)

        assert [strategy.calculate_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        strategy = RetryStrategy(initial_delay=1.0, jitter=True, jitter_range=(0.5, 1.5))

        for _ in range(20):
            assert 0.5 <= strategy.calculate_delay(0) <= 1.5

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryStrategy(max_attempts=0)

    def test_for_conflicts_uses_tree_settings(self):
        settings = TreeSettings(conflict_retry_attempts=5, conflict_retry_delay=0.1, conflict_retry_max_delay=1.0)

        strategy = RetryStrategy.for_conflicts(settings)

        assert strategy.max_attempts == 5
        assert strategy.initial_delay == 0.1
        assert strategy.max_delay == 1.0
        assert strategy.should_retry(ConcurrencyConflictError("busy", operation="tree.move_as_last_child"))
        assert not strategy.should_retry(InvalidOperationError("bad", operation="tree.move_as_last_child"))


@pytest.mark.unit
class TestRetryOnConflict:
    """Test suite for retry_on_conflict."""

    @pytest.fixture
    def settings(self) -> TreeSettings:
        return TreeSettings(conflict_retry_attempts=3, conflict_retry_delay=0.0, conflict_retry_max_delay=0.0)

    @pytest.mark.asyncio
    async def test_conflicts_are_retried(self, settings):
        call_count = 0

        @retry_on_conflict(settings)
        async def mutate():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConcurrencyConflictError("partition busy", operation="tree.delete")
            return "done"

        assert await mutate() == "done"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_other_tree_errors_propagate_immediately(self, settings):
        call_count = 0

        @retry_on_conflict(settings)
        async def mutate():
            nonlocal call_count
            call_count += 1
            raise InvalidOperationError("cycle", operation="tree.move_as_first_child")

        with pytest.raises(InvalidOperationError):
            await mutate()

        assert call_count == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_raises_retry_error(self, settings):
        @retry_on_conflict(settings)
        async def mutate():
            raise ConcurrencyConflictError("partition busy", operation="tree.delete")

        with pytest.raises(RetryError) as exc_info:
            await mutate()

        assert isinstance(exc_info.value.__cause__, ConcurrencyConflictError)
