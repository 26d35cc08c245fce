"""Settings and logger setup."""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logging.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


# ----------------------------------------------------------------------------
# Settings and defaults
# ----------------------------------------------------------------------------

class Config:
    """Application settings, overridable through environment variables."""
    # File paths
    AWS_CONFIG_PATH = Path("~/.aws/config").expanduser()
    AWS_CRED_PATH = Path("~/.aws/credentials").expanduser()
    LOG_PATH = Path.home() / ".awsrat.log"

    # Session Manager plugin default install location (not always on PATH)
    SSM_PLUGIN_DIR = "/usr/local/sessionmanagerplugin/bin"

    # Region queried for describe_regions when none is selected yet
    BOOTSTRAP_REGION = "us-east-1"

    # Local port allocation, exclusive lower bound
    PORT_MIN = 1024
    PORT_MAX = 65535
    PORT_ALLOCATION_ATTEMPTS = 100
    PROBE_HOST = "127.0.0.1"
    PROBE_TIMEOUT = 1.0

    # Tunnel readiness (seconds)
    READY_POLL_INTERVAL = _env_float("AWSRAT_READY_POLL_INTERVAL", 1.0)
    READY_TIMEOUT = _env_float("AWSRAT_READY_TIMEOUT", 60.0)

    # Grace period before survivors of a tunnel teardown are killed
    TERMINATE_GRACE_SECONDS = 3.0

    # SSH over SSM
    SSH_USER = os.environ.get("AWSRAT_SSH_USER", "ec2-user")
    SSH_REMOTE_PORT = 22

    # ECS service restart polling (seconds)
    SERVICE_POLL_INTERVAL = 30
    SERVICE_STABLE_TIMEOUT = _env_float("AWSRAT_SERVICE_STABLE_TIMEOUT", 1800.0)
    SERVICE_EVENTS_SHOWN = 3

    # Debug mode
    DEBUG_MODE = os.environ.get("AWSRAT_DEBUG", "0") == "1"


# ----------------------------------------------------------------------------
# Logger setup
# ----------------------------------------------------------------------------
def setup_logger(debug: bool) -> None:
    """Configure the root logger: everything to the log file, warnings to the console."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if debug else logging.WARNING)
    handlers = [console, logging.FileHandler(Config.LOG_PATH, encoding="utf-8")]
    # style='%' keeps boto3's own log records formatting correctly
    logging.basicConfig(level=level, format=fmt, handlers=handlers, style='%')
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
