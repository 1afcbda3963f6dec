"""
Root conftest — sets environment variables before any delivery_monitor module
is imported so that pydantic-settings builds the Settings singleton from
known values instead of a developer's .env file.
"""
import os

os.environ.setdefault("GOOGLE_MAPS_API_KEY", "test-key-not-used-in-tests")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("SENDGRID_API_KEY", "")
os.environ.setdefault("MONITOR_POLL_INTERVAL_SECONDS", "1800")
