"""
Unit tests for BackoffPolicy and DispatcherConfig.
"""

import pytest

from eventrelay.config import BackoffPolicy, DispatcherConfig


class TestBackoffPolicy:
    def test_defaults(self):
        policy = BackoffPolicy()

        assert policy.initial_delay == 1.0
        assert policy.multiplier == 2.0
        assert policy.max_delay == 300.0
        assert policy.jitter == 0.0

    @pytest.mark.parametrize("attempt,expected", [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0)])
    def test_exponential_growth(self, attempt: int, expected: float):
        assert BackoffPolicy().delay_for(attempt) == expected

    def test_capped_at_max_delay(self):
        policy = BackoffPolicy(initial_delay=10.0, multiplier=10.0, max_delay=60.0)

        assert policy.delay_for(5) == 60.0

    def test_no_delay_before_first_attempt(self):
        assert BackoffPolicy().delay_for(0) == 0.0

    def test_constant_delay(self):
        policy = BackoffPolicy(initial_delay=5.0, multiplier=1.0)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5.0, 5.0, 5.0]

    def test_jitter_stays_within_range(self):
        policy = BackoffPolicy(initial_delay=10.0, jitter=0.5)

        for _ in range(50):
            assert 5.0 <= policy.delay_for(1) <= 15.0

    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"initial_delay": -1.0}, "initial_delay"),
            ({"multiplier": 0.5}, "multiplier"),
            ({"initial_delay": 10.0, "max_delay": 5.0}, "max_delay"),
            ({"jitter": 1.5}, "jitter"),
        ],
    )
    def test_invalid_values(self, kwargs: dict, message: str):
        with pytest.raises(ValueError, match=message):
            BackoffPolicy(**kwargs)


class TestDispatcherConfig:
    def test_defaults(self):
        config = DispatcherConfig()

        assert config.batch_size == 100
        assert config.poll_interval == 1.0
        assert config.lease_duration == 30.0
        assert config.max_attempts == 5
        assert config.topic == "domain-events"
        assert config.publish_timeout == 10.0
        assert config.backoff == BackoffPolicy()

    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"batch_size": 0}, "batch_size"),
            ({"poll_interval": 0}, "poll_interval"),
            ({"lease_duration": -1}, "lease_duration"),
            ({"max_attempts": 0}, "max_attempts"),
            ({"topic": ""}, "topic"),
            ({"publish_timeout": 0}, "publish_timeout"),
        ],
    )
    def test_invalid_values(self, kwargs: dict, message: str):
        with pytest.raises(ValueError, match=message):
            DispatcherConfig(**kwargs)

    def test_publish_timeout_must_be_shorter_than_lease(self):
        with pytest.raises(ValueError, match="must be < lease_duration"):
            DispatcherConfig(lease_duration=5.0, publish_timeout=5.0)

    def test_config_is_frozen(self):
        config = DispatcherConfig()

        with pytest.raises(AttributeError):
            config.batch_size = 1  # type: ignore[misc]
