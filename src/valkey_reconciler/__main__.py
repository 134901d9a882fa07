import argparse
import asyncio
import logging
import os
import sys
from typing import Mapping, Optional, Sequence

from valkey_reconciler._version import __version__
from valkey_reconciler.commands import COMMANDS
from valkey_reconciler.config import Env


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="valkey-reconciler",
        description="Reconcile a Valkey cluster running in a StatefulSet to the desired shape",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", metavar="<init|scale-up|scale-down>")
    subparsers.required = True
    subparsers.add_parser("init", help="create the cluster on freshly started pods")
    subparsers.add_parser("scale-up", help="add masters and replicas, then rebalance slots")
    subparsers.add_parser("scale-down", help="free pods which are about to be removed")
    return parser


def setup_logging(environ: Mapping[str, str]) -> None:
    level = environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        stream=sys.stdout,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    if environ is None:
        environ = os.environ

    args = build_parser().parse_args(argv)

    try:
        setup_logging(environ)
        env = Env.from_environ(environ)
        command = COMMANDS[args.command](env)
        asyncio.run(command.run())
    except Exception as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
