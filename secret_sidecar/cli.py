# -*- coding: utf-8 -*-
"""
Command line entry point.

Usage:
    secret-sidecar                      # keep the secret published until SIGTERM
    secret-sidecar --once               # publish once and exit (init container)
    secret-sidecar --config conf.json   # read options from a file, env still wins

Exit codes: 0 on clean shutdown, 2 on a configuration error, 1 when ``--once``
was cancelled before anything was published.
"""

import argparse
import logging
import sys

from ._version import __version__
from .controller import SidecarController
from .exceptions import ConfigError
from .config import LOG_LEVELS, load_config

EXIT_OK = 0
EXIT_NOT_PUBLISHED = 1
EXIT_CONFIG_ERROR = 2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="secret-sidecar",
        description="Fetch a secret from the store, publish it to a file and keep it renewed.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="JSON file with options (SIDECAR_* env vars override it)")
    parser.add_argument("--once", action="store_true", help="Publish once and exit")
    parser.add_argument("--store-addr", dest="store_addr", help="Store URL")
    parser.add_argument("--role", help="Role to log in as")
    parser.add_argument("--secret-path", dest="secret_path", help="Secret to publish")
    parser.add_argument("--output-path", dest="output_path", help="File to publish to")
    parser.add_argument("--log-level", dest="log_level", type=str.upper, choices=LOG_LEVELS,
                        help="Logging level, default INFO")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    overrides = {
        "store_addr": args.store_addr,
        "role": args.role,
        "secret_path": args.secret_path,
        "output_path": args.output_path,
        "log_level": args.log_level,
    }

    logging.basicConfig(level=(args.log_level or "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        config = load_config(args.config, **overrides)
    except ConfigError as e:
        logging.getLogger(__name__).error(str(e))
        return EXIT_CONFIG_ERROR
    logging.getLogger().setLevel(config.log_level.upper())

    controller = SidecarController(config)
    if args.once:
        return EXIT_OK if controller.run_once() else EXIT_NOT_PUBLISHED
    controller.run()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
