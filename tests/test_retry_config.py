"""Tests for retry policies and their wiring from settings."""

import pytest

from media_pipeline.core.config import Settings
from media_pipeline.core.retry import RetryConfig, build_retry_configs, get_retry_config
from media_pipeline.modules.media.keys import build_key_manager
from media_pipeline.modules.transcoding.service import build_orchestrator

from conftest import InMemoryObjectStore


class TestRetryConfig:
    def test_exponential_backoff_is_capped(self) -> None:
        config = RetryConfig(max_attempts=5, initial_delay=1.0, max_delay=5.0, backoff_multiplier=2.0)
        assert [config.calculate_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_should_retry_until_max_attempts(self) -> None:
        config = RetryConfig(max_attempts=3)
        assert [config.should_retry(n) for n in (1, 2, 3)] == [True, True, False]

    def test_unknown_name_falls_back_to_default(self) -> None:
        assert get_retry_config("nope").max_attempts == get_retry_config("default").max_attempts


class TestRetryConfigFromSettings:
    def test_policies_follow_the_given_settings(self) -> None:
        configs = build_retry_configs(Settings(
            TRANSCODE_SUBMIT_MAX_ATTEMPTS=7,
            TRANSCODE_RETRY_INITIAL_DELAY=0.25,
            TRANSCODE_POLL_MAX_ATTEMPTS=2,
            STORAGE_MAX_ATTEMPTS=6,
        ))
        assert configs["transcode_submit"].max_attempts == 7
        assert configs["transcode_submit"].initial_delay == 0.25
        assert configs["transcode_poll"].max_attempts == 2
        assert configs["storage"].max_attempts == 6

    def test_orchestrator_uses_injected_settings(self, session_factory, transcoder) -> None:
        config = Settings(TRANSCODE_SUBMIT_MAX_ATTEMPTS=9, TRANSCODE_POLL_MAX_ATTEMPTS=4)
        orchestrator = build_orchestrator(session_factory, transcoder, config)
        assert orchestrator.submit_retry.max_attempts == 9
        assert orchestrator.poll_retry.max_attempts == 4

    @pytest.mark.parametrize("attempts", [1, 6])
    def test_key_manager_uses_injected_settings(self, attempts) -> None:
        keys = build_key_manager(Settings(STORAGE_MAX_ATTEMPTS=attempts), store=InMemoryObjectStore())
        assert keys.retry_config.max_attempts == attempts
