import os
from importlib import reload
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def _restore_settings():
    """Rebuild the settings singleton from the unpatched environment afterwards."""
    yield
    import delivery_monitor.config as config_module
    reload(config_module)


def test_settings_defaults():
    """All default values are set correctly."""
    with patch.dict(os.environ, {"GOOGLE_MAPS_API_KEY": "test-key"}, clear=False):
        import delivery_monitor.config as config_module
        reload(config_module)
        s = config_module.settings
        assert s.REDIS_HOST == "localhost"
        assert s.REDIS_PORT == 6379
        assert s.MONITOR_RECORD_TTL_SECONDS == 86400
        assert s.CELERY_TASK_QUEUE == "deliveries"
        assert s.TRAFFIC_PROVIDER == "google_routes"
        assert s.TRAFFIC_MAX_ATTEMPTS == 2
        assert s.COMPANY_NAME == "MyFreightApp"
        assert s.ENV == "development"
        assert s.LOG_LEVEL == "INFO"


def test_monitoring_policy_defaults():
    """Poll interval 30 min, threshold 30 min, notify delta 10 min."""
    with patch.dict(os.environ, {"MONITOR_POLL_INTERVAL_SECONDS": "1800"}, clear=False):
        import delivery_monitor.config as config_module
        reload(config_module)
        s = config_module.settings
        assert s.MONITOR_POLL_INTERVAL_SECONDS == 1800
        assert s.DELAY_THRESHOLD_MINUTES == 30
        assert s.NOTIFY_DELTA_MINUTES == 10


def test_settings_override_via_env():
    """Environment variables override defaults."""
    overrides = {
        "GOOGLE_MAPS_API_KEY": "my-api-key",
        "TRAFFIC_PROVIDER": "google_legacy",
        "REDIS_PORT": "6380",
        "USE_MOCK_EMAIL": "true",
    }
    with patch.dict(os.environ, overrides, clear=False):
        import delivery_monitor.config as config_module
        reload(config_module)
        s = config_module.settings
        assert s.GOOGLE_MAPS_API_KEY == "my-api-key"
        assert s.TRAFFIC_PROVIDER == "google_legacy"
        assert s.REDIS_PORT == 6380
        assert s.USE_MOCK_EMAIL is True


def test_settings_singleton_exported():
    """The module exports a `settings` singleton instance."""
    import delivery_monitor.config as config_module
    reload(config_module)
    assert isinstance(config_module.settings, config_module.Settings)
