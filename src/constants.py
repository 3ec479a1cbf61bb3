"""Constants used in the project."""

from enum import Enum


class RollingModes(Enum):
    """Rolling keywords accepted in manifest-style policy mappings.

    Args:
        Enum (string): Rolling mode keyword.
    """

    FIXED = "fixed"
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    RESOLVE = "[RESOLVE]"
    STORE = "[STORE]"

    # Environment variables
    ENV_CONFIG = "POLYPIN_CONFIG"
    ENV_STORE_ROOT = "POLYPIN_STORE_ROOT"
    ENV_LOG_LEVEL = "POLYPIN_LOG_LEVEL"
    ENV_LOCK_TIMEOUT = "POLYPIN_LOCK_TIMEOUT"
    ENV_STAGING_WORKERS = "POLYPIN_STAGING_WORKERS"

    # Config discovery
    CONFIG_FILE_NAMES = ["polypin.yml", "polypin.yaml"]

    # Defaults
    DEFAULT_STORE_ROOT = "~/.polypin/store"
    DEFAULT_LOCK_TIMEOUT_SEC = 30.0
    DEFAULT_STAGING_WORKERS = 4
    DEFAULT_MAX_RESOLUTION_STEPS = 100000
    DEFAULT_STALE_TMP_SEC = 3600
    LOCK_POLL_INTERVAL_SEC = 0.05

    # Store layout
    PACKAGES_DIR = "packages"
    HISTORY_DIR = "history"
    LOCKS_DIR = "locks"
    TMP_DIR = "tmp"
    ENTRY_METADATA_FILE = "entry.json"
    PAYLOAD_DIR = "payload"
    PAYLOAD_BLOB_NAME = "content"
    HISTORY_SUFFIX = ".jsonl"
    STORE_LOCK_FILE = "store.lock"
    DIGEST_ALGORITHM = "sha256"
    DIGEST_KEY_LENGTH = 32
