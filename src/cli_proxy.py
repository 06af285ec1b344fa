"""CLI entry point for the certgate proxy server.

Turns parsed arguments, environment variables and the optional policy file
into a ProxyConfig and a policy predicate, then runs the server.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import sys
from typing import Any, Dict, Optional

import yaml

from common.logging_utils import configure_logging
from constants import Constants, ExitCodes

logger = logging.getLogger(__name__)


def _is_local_bind_host(host: str) -> bool:
    """Return True if host is a loopback/local bind target."""
    if not host:
        return False
    host_lower = host.strip().lower()
    if host_lower in ("localhost",):
        return True
    try:
        return ipaddress.ip_address(host_lower).is_loopback
    except ValueError:
        # Non-IP hostnames are treated as non-local unless explicitly allowed.
        return False


def _enforce_local_binding(host: str, allow_external: bool) -> None:
    """Enforce local-only binding unless explicitly allowed."""
    if _is_local_bind_host(host):
        return
    if not allow_external:
        sys.stderr.write(
            "ERROR: Non-local bindings require --allow-external.\n"
        )
        sys.exit(ExitCodes.BIND_ERROR.value)
    logger.warning(
        "Binding proxy to non-local address (%s). Ensure network controls are in place.",
        host,
    )


def _load_policy_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Load policy configuration from file.

    Args:
        config_path: Path to YAML/JSON config file.

    Returns:
        Policy configuration dict (the ``policy`` section if present).
    """
    if not config_path:
        return {}

    if not os.path.isfile(config_path):
        logger.error("Config file not found: %s", config_path)
        sys.exit(ExitCodes.USAGE_ERROR.value)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load config %s: %s", config_path, e)
        sys.exit(ExitCodes.USAGE_ERROR.value)

    if isinstance(data, dict):
        policy = data.get("policy", data)
        return policy if isinstance(policy, dict) else {}
    return {}


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments.

    Args:
        args: Parsed CLI arguments.
    """
    # Honor CLI --loglevel
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = str(args.LOG_LEVEL).upper()

    configure_logging()

    # Add file handler if --logfile specified
    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def _resolve_token(args: Any) -> Optional[str]:
    """CLI --token, then the CERTGATE_TOKEN environment variable."""
    token = getattr(args, "TOKEN", None) or os.environ.get(Constants.ENV_TOKEN)
    if token and token.strip():
        return token.strip()
    return None


def _resolve_port(args: Any) -> int:
    """CLI --port, then CERTGATE_PORT, then PORT, then the default."""
    if getattr(args, "PROXY_PORT", None):
        return int(args.PROXY_PORT)
    for name in (Constants.ENV_PORT, Constants.ENV_PORT_FALLBACK):
        value = os.environ.get(name)
        if value and value.strip():
            try:
                return int(value)
            except ValueError:
                logger.error("Invalid port in $%s: %s", name, value)
                sys.exit(ExitCodes.USAGE_ERROR.value)
    return Constants.DEFAULT_PORT


def _resolve_registry(args: Any) -> str:
    """Positional REGISTRY, then CERTGATE_REGISTRY, then the public npm registry."""
    return (
        getattr(args, "registry", None)
        or os.environ.get(Constants.ENV_REGISTRY)
        or Constants.REGISTRY_URL_NPM
    )


def build_proxy_config(args: Any):
    """Build the server config from arguments and environment.

    Exits with a usage message when no API token is available.
    """
    from proxy.server import ProxyConfig  # pylint: disable=import-outside-toplevel

    token = _resolve_token(args)
    if not token:
        sys.stderr.write(f"Usage: {Constants.ENV_TOKEN}=xxx certgate [REGISTRY]\n")
        sys.exit(ExitCodes.USAGE_ERROR.value)

    args.TOKEN = token
    args.PROXY_PORT = _resolve_port(args)
    args.REGISTRY = _resolve_registry(args)
    return ProxyConfig.from_args(args)


def build_policy(args: Any, policy_config: Dict[str, Any]):
    """Build the default score policy; --min-score wins over the file."""
    from proxy.policy import ScorePolicy  # pylint: disable=import-outside-toplevel

    return ScorePolicy.from_config(policy_config, min_score=getattr(args, "MIN_SCORE", None))


def run_proxy_server(args: Any) -> None:
    """Entry point for the proxy server command.

    Args:
        args: Parsed CLI arguments namespace.
    """
    _setup_logging(args)

    from proxy.server import run_proxy_server_sync  # pylint: disable=import-outside-toplevel

    config = build_proxy_config(args)
    _enforce_local_binding(config.host, config.allow_external)

    config_path = getattr(args, "CONFIG", None)
    policy_config = _load_policy_config(config_path)
    if policy_config:
        logger.info("Loaded policy config from: %s", config_path)
    policy = build_policy(args, policy_config)
    logger.info("Minimum certification score: %g", policy.min_score)

    # Print startup banner
    print(
        f"\n"
        f"  certgate registry proxy\n"
        f"  =======================\n"
        f"  Listening: http://{config.host}:{config.port}/\n"
        f"  Registry:  {config.registry}\n"
        f"  Min score: {policy.min_score:g}\n"
        f"\n"
        f"  Configure npm:\n"
        f"    npm config set registry http://{config.public_host}:{config.port}/\n"
        f"\n"
        f"  Press Ctrl+C to stop\n"
    )

    run_proxy_server_sync(config, check=policy)
