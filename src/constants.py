"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    USAGE_ERROR = 1
    BIND_ERROR = 2


class CertificationErrorModes(Enum):
    """What the gate does when the certification query fails.

    Args:
        Enum (string): Mode names accepted on the command line.
    """

    ERROR = "error"
    BLOCK = "block"
    ALLOW = "allow"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_NPM = "https://registry.npmjs.org"
    CERTIFICATION_API_URL = "https://api.nodesource.com/ncm2/api/v1"
    DEFAULT_HOST = "127.0.0.1"
    DEFAULT_PORT = 14313
    PUBLIC_HOST = "localhost"
    MIN_SCORE = 85
    MAX_REDIRECTS = 5
    REQUEST_TIMEOUT = 30  # Timeout in seconds for upstream registry requests
    CERTIFICATION_TIMEOUT = 10  # Timeout in seconds for the certification query
    MAX_BODY_SIZE = 50 * 1024 * 1024  # Largest inbound body (npm publish)
    USER_AGENT = "certgate/1.0"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    CERTIFICATION_ERROR_MODES = [mode.value for mode in CertificationErrorModes]

    # Environment variables
    ENV_TOKEN = "CERTGATE_TOKEN"
    ENV_PORT = "CERTGATE_PORT"
    ENV_PORT_FALLBACK = "PORT"
    ENV_REGISTRY = "CERTGATE_REGISTRY"
    ENV_API_URL = "CERTGATE_API_URL"
    ENV_LOG_LEVEL = "CERTGATE_LOG_LEVEL"
