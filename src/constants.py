"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FAILURE = 101


class DependencyKinds(Enum):
    """Manifest tables that declare dependencies, keyed by edge kind.

    Args:
        Enum (string): Manifest table name for the kind.
    """

    NORMAL = "dependencies"
    BUILD = "build-dependencies"
    DEV = "dev-dependencies"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration defaults; not intended to provide behavior.
    """

    PROG = "deplock"
    MANIFEST_FILE = "deplock.toml"
    LOCK_FILE = "deplock.lock"
    LOCK_FORMAT_VERSION = 1
    CONFIG_DIR = ".deplock"
    CONFIG_FILE = "config.yaml"
    ENV_PREFIX = "DEPLOCK_"
    ENV_LOG_LEVEL = "DEPLOCK_LOG_LEVEL"

    REGISTRY_URL = "https://index.deplock.dev/"
    DEFAULT_CACHE_DIR = "~/.cache/deplock"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_CACHE_TTL_SEC = 300
    INDEX_TTL_SEC = 300  # Cached index documents younger than this are not refetched
    FETCH_MAX_CONCURRENCY = 8
    GIT_COMMAND_TIMEOUT = 120

    COLOR_CHOICES = ["auto", "always", "never"]
