#!/usr/bin/env python3

import argparse
import logging
import sys

import yaml

from .common import CheckerError
from .config import Settings
from .runner import Runner
from .utils import GracefulKiller


def set_logging_config(tags, log_level_str=None):
    """Configure logging to output only to stderr."""
    handlers = [logging.StreamHandler(sys.stderr)]

    log_levels = {
        'critical': logging.CRITICAL,
        'error': logging.ERROR,
        'warning': logging.WARNING,
        'info': logging.INFO,
        'debug': logging.DEBUG,
    }

    log_level = log_levels.get(log_level_str)
    if log_level is None:
        logging.warning(f'Unknown log level {log_level_str}, setting info')
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format=f'[{tags} %(asctime)s %(levelname)8s] %(message)s',
        handlers=handlers,
    )


def build_parser():
    parser = argparse.ArgumentParser(
        description="verify a replication pipeline with invariant-preserving workloads",
    )
    parser.add_argument("--config", help="config file path", default=None, type=str)
    parser.add_argument("--upstream", help="upstream dsn, e.g. mysql://root@127.0.0.1:4000/test", type=str)
    parser.add_argument("--downstream", help="downstream dsn, mysql:// or clickhouse://", type=str)
    parser.add_argument("--accounts", help="rows per scenario table", type=int)
    parser.add_argument("--tables", help="number of independent shards", type=int)
    parser.add_argument("--concurrency", help="bootstrap insert workers", type=int)
    parser.add_argument("--interval", help="seconds between verify passes", type=float)
    parser.add_argument(
        "--test-round", dest="test_round", type=int,
        help="stop after this many verified rounds (0 runs until stopped)",
    )
    parser.add_argument(
        "--cleanup", action="store_true", default=False,
        help="drop all checker tables on both stores and exit",
    )
    parser.add_argument(
        "--log-level", dest="log_level", type=str,
        choices=["critical", "error", "warning", "info", "debug"],
    )
    return parser


def load_settings(args) -> Settings:
    config = Settings()
    if args.config:
        config.load(args.config)
    else:
        config.load_env()
    config.apply_args(args)
    config.validate()
    return config


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_settings(args)
    except (ValueError, OSError, yaml.YAMLError) as e:
        set_logging_config('checker', log_level_str='info')
        logging.critical(f'invalid configuration: {e}')
        sys.exit(2)

    set_logging_config('checker', log_level_str=config.log_level)
    logging.info(
        f'upstream {config.upstream.describe()}, downstream {config.downstream.describe()}, '
        f'{config.tables} shards x {config.accounts} accounts'
    )

    runner = Runner(config)
    GracefulKiller(on_kill=lambda: runner.state.cancel('signal received'))
    try:
        runner.run()
    except CheckerError as e:
        logging.critical(f'consistency check failed: {e}')
        sys.exit(1)


if __name__ == '__main__':
    main()
