#!/usr/bin/env python3
"""deplock - dependency lock file updater.

Any DeplockError is reported as ``error: <message>`` with exit status 101.
"""

import logging
import sys
from pathlib import Path

from args import parse_args
from cli_config import ConfigProvider
from cli_update import UpdateCommand
from common.logging_utils import configure_logging, extra_context, is_debug_enabled, level_from_flags
from constants import ExitCodes
from errors import DeplockError, SpecifierNotFound
from manifest import find_manifest
from versioning.models import UpdateMode
from versioning.parser import parse_specifier

logger = logging.getLogger(__name__)


def build_mode(args, config):
    """Translate parsed arguments into an UpdateMode."""
    targets = []
    for token in args.SPECS:
        try:
            targets.append(parse_specifier(token))
        except ValueError as exc:
            raise SpecifierNotFound(f"invalid package ID specification `{token}`: {exc}", specifier=token) from exc
    frozen = bool(args.FROZEN or args.LOCKED)
    offline = bool(args.OFFLINE or args.FROZEN or config.get_bool("net.offline"))
    return UpdateMode(
        targets=tuple(targets),
        aggressive=bool(args.AGGRESSIVE),
        precise=args.PRECISE,
        workspace_only=bool(args.WORKSPACE),
        dry_run=bool(args.DRY_RUN),
        frozen=frozen,
        offline=offline,
    )


def resolve_manifest_path(args, cwd):
    """--manifest-path relative to the working directory, else search upwards."""
    if args.MANIFEST_PATH:
        path = Path(args.MANIFEST_PATH)
        return path if path.is_absolute() else cwd / path
    return find_manifest(cwd)


def run_update(args):
    """Run the update command for parsed arguments."""
    cwd = Path.cwd()
    if args.DIRECTORY:
        cwd = (cwd / args.DIRECTORY).resolve()
    config = ConfigProvider.load(cwd, cli_overrides=args.CONFIG)
    if args.COLOR is None:
        configure_logging(level_from_flags(args.VERBOSE, args.QUIET), color=config.get_str("term.color") or "auto")

    mode = build_mode(args, config)
    if is_debug_enabled(logger):
        logger.debug(
            "Update mode",
            extra=extra_context(
                event="decision", component="cli", action="build_mode",
                targets=len(mode.targets), aggressive=mode.aggressive, frozen=mode.frozen, offline=mode.offline,
            ),
        )
    command = UpdateCommand(resolve_manifest_path(args, cwd), mode, config)
    command.run()


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(level_from_flags(args.VERBOSE, args.QUIET), color=args.COLOR or "auto")

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action="main", command=args.command)
        )

    try:
        run_update(args)
    except DeplockError as exc:
        logger.error("%s", exc)
        if is_debug_enabled(logger):
            logger.debug(
                "CLI finished",
                extra=extra_context(event="function_exit", component="cli", action="main",
                                    outcome="failure", kind=exc.kind)
            )
        return ExitCodes.FAILURE.value
    except KeyboardInterrupt:
        logger.error("Interrupted, aborting")
        return ExitCodes.FAILURE.value

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(event="function_exit", component="cli", action="main", outcome="success")
        )
    return ExitCodes.SUCCESS.value


if __name__ == "__main__":
    sys.exit(main())
