# Service modules read their configuration at import time, so the environment
# has to be in place before any test module imports them.
import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="groupbuy-tests-")

os.environ.setdefault("GROUP_DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'group.db')}")
os.environ.setdefault("NOTIFICATION_DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'notification.db')}")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("EXPIRY_SCHEDULER_ENABLED", "false")
os.environ.setdefault("NOTIFICATION_CONSUMER_ENABLED", "false")
os.environ.setdefault("HEARTBEAT_INTERVAL_SECONDS", "30")
os.environ.setdefault("LOG_LEVEL", "WARNING")
