"""Argument parsing functionality for certgate."""

import argparse
from constants import Constants


def build_parser():
    """Builds the argument parser."""
    parser = argparse.ArgumentParser(
        prog="certgate",
        description=(
            "certgate - npm registry proxy that gates tarball downloads on certification scores"
        ),
        add_help=True,
    )

    parser.add_argument("registry",
                        metavar="REGISTRY",
                        nargs="?",
                        help=f"Upstream registry URL (default: ${Constants.ENV_REGISTRY} or {Constants.REGISTRY_URL_NPM})",
                        type=str)
    parser.add_argument("--host",
                        dest="PROXY_HOST",
                        help=f"Address to listen on (default: {Constants.DEFAULT_HOST})",
                        action="store",
                        type=str,
                        default=Constants.DEFAULT_HOST)
    parser.add_argument("--port",
                        dest="PROXY_PORT",
                        help=f"Port to listen on (default: ${Constants.ENV_PORT}, $PORT or {Constants.DEFAULT_PORT})",
                        action="store",
                        type=int)
    parser.add_argument("--public-host",
                        dest="PUBLIC_HOST",
                        help=f"Host written into rewritten tarball URLs (default: {Constants.PUBLIC_HOST})",
                        action="store",
                        type=str)
    parser.add_argument("--allow-external",
                        dest="ALLOW_EXTERNAL",
                        help="Allow binding to a non-loopback address.",
                        action="store_true")

    parser.add_argument("--token",
                        dest="TOKEN",
                        help=f"Certification API token (default: ${Constants.ENV_TOKEN})",
                        action="store",
                        type=str)
    parser.add_argument("--api-url",
                        dest="API_URL",
                        help=f"Certification API URL (default: ${Constants.ENV_API_URL} or the public endpoint)",
                        action="store",
                        type=str)
    parser.add_argument("--min-score",
                        dest="MIN_SCORE",
                        help=f"Lowest certification score allowed (default: {Constants.MIN_SCORE})",
                        action="store",
                        type=float)
    parser.add_argument("--on-cert-error",
                        dest="ON_CERT_ERROR",
                        help="What to do when certification fails (default: error)",
                        action="store",
                        type=str.lower,
                        choices=Constants.CERTIFICATION_ERROR_MODES,
                        default="error")
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to policy configuration file (YAML, YML, or JSON)",
                        action="store",
                        type=str)

    parser.add_argument("--timeout",
                        dest="PROXY_TIMEOUT",
                        help=f"Upstream request timeout in seconds (default: {Constants.REQUEST_TIMEOUT})",
                        action="store",
                        type=float,
                        default=Constants.REQUEST_TIMEOUT)
    parser.add_argument("--certification-timeout",
                        dest="CERTIFICATION_TIMEOUT",
                        help=f"Certification query timeout in seconds (default: {Constants.CERTIFICATION_TIMEOUT})",
                        action="store",
                        type=float,
                        default=Constants.CERTIFICATION_TIMEOUT)

    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)

    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
