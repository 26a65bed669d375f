from __future__ import annotations

from unittest.mock import patch

import pytest

from research_swarm.config import settings


@pytest.fixture(autouse=True)
def no_backoff():
    """Retry backoff without real sleeps."""
    with patch.object(settings, "retry_base_delay_seconds", 0.0), \
            patch.object(settings, "retry_jitter_seconds", 0.0), \
            patch.object(settings, "briefing_retry_base_delay_seconds", 0.0), \
            patch.object(settings, "synthesis_retry_base_delay_seconds", 0.0):
        yield
