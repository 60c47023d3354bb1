"""Command line entry point for the jobs demo."""

from __future__ import annotations

import argparse
import logging
import os
import platform
import ssl
import sys
from collections.abc import Mapping, Sequence

from iotjobs.config import DemoConfig, load_config
from iotjobs.demo import JobsDemo

logger = logging.getLogger("iotjobs")

_OPTION_TO_ENV = {
    "client_id": "CONFIG_MQTT_CLIENT_IDENTIFIER",
    "endpoint": "CONFIG_MQTT_BROKER_ENDPOINT",
    "port": "CONFIG_MQTT_BROKER_PORT",
    "thing_name": "CONFIG_THING_NAME",
    "platform": "CONFIG_HARDWARE_PLATFORM_NAME",
    "root_ca": "CONFIG_ROOT_CA_PATH",
    "cert": "CONFIG_CLIENT_CERT_PATH",
    "key": "CONFIG_CLIENT_KEY_PATH",
}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iotjobs",
        description="Receive jobs from the jobs service, execute them and report their status.",
    )
    parser.add_argument("--client-id", help="MQTT client identifier")
    parser.add_argument("--endpoint", help="broker host name")
    parser.add_argument("--port", help="broker port")
    parser.add_argument("--thing-name", help="thing name (defaults to the client identifier)")
    parser.add_argument("--platform", help="hardware platform name for the metrics string")
    parser.add_argument("--root-ca", help="path of the root CA certificate")
    parser.add_argument("--cert", help="path of the client certificate")
    parser.add_argument("--key", help="path of the client private key")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug messages")
    return parser


def _parse(argv: Sequence[str] | None) -> argparse.Namespace:
    return _parser().parse_args(argv)


def _config_from_args(args: argparse.Namespace, environ: Mapping[str, str]) -> DemoConfig:
    settings = dict(environ)
    for option, env_key in _OPTION_TO_ENV.items():
        value = getattr(args, option)
        if value is not None:
            settings[env_key] = value
    return load_config(settings)


def _config_from_argv(argv: Sequence[str] | None, environ: Mapping[str, str]) -> DemoConfig:
    """Settings from ``environ`` with command line options taking precedence."""
    return _config_from_args(_parse(argv), environ)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the jobs demo; return 0 on success, 1 on failure, 2 for bad settings."""
    args = _parse(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    logger.info("[APP] Startup..")
    logger.info("[APP] Python version: %s", platform.python_version())

    try:
        config = _config_from_args(args, os.environ)
    except ValueError as error:
        print(f"iotjobs: {error}", file=sys.stderr)
        return 2

    try:
        demo = JobsDemo(config)
    except (OSError, ssl.SSLError) as error:
        logger.error("Failed to set up the TLS connection: %s", error)
        return 1

    return 0 if demo.run() else 1


if __name__ == "__main__":
    sys.exit(main())