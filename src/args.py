"""Argument parsing functionality for deplock."""

import argparse
import sys

from constants import Constants, ExitCodes


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that exits with the tool's failure status on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(ExitCodes.FAILURE.value, f"{self.prog}: error: {message}\n")


def _add_global_options(parser):
    parser.add_argument("-v", "--verbose",
                        dest="VERBOSE",
                        help="Use verbose output (-vv very verbose)",
                        action="count",
                        default=0)
    parser.add_argument("-q", "--quiet",
                        dest="QUIET",
                        help="Do not print status messages",
                        action="store_true")
    parser.add_argument("--color",
                        dest="COLOR",
                        help="Coloring: auto, always, never",
                        action="store",
                        type=str,
                        choices=Constants.COLOR_CHOICES)
    parser.add_argument("--manifest-path",
                        dest="MANIFEST_PATH",
                        help=f"Path to {Constants.MANIFEST_FILE}",
                        action="store",
                        type=str)
    lock_group = parser.add_mutually_exclusive_group()
    lock_group.add_argument("--frozen",
                            dest="FROZEN",
                            help="Require the lock file to be up to date and disable network access",
                            action="store_true")
    lock_group.add_argument("--locked",
                            dest="LOCKED",
                            help="Require the lock file to be up to date",
                            action="store_true")
    parser.add_argument("--offline",
                        dest="OFFLINE",
                        help="Run without accessing the network",
                        action="store_true")
    parser.add_argument("--config",
                        dest="CONFIG",
                        help="Override a configuration value (KEY=VALUE) or load a config file (PATH)",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("-C",
                        dest="DIRECTORY",
                        help="Change to DIRECTORY before doing anything",
                        action="store",
                        type=str)


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = _Parser(
        prog=Constants.PROG,
        description="deplock - dependency lock file updater",
        add_help=True,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    update = subparsers.add_parser(
        "update",
        help=f"Update dependencies as recorded in {Constants.LOCK_FILE}",
        description=f"Update dependencies as recorded in the local lock file ({Constants.LOCK_FILE})",
    )
    update.add_argument("SPECS",
                        help="Package(s) to update: name, name@version, or <source-url>#name[@version]",
                        nargs="*",
                        metavar="SPEC")
    update.add_argument("--aggressive",
                        dest="AGGRESSIVE",
                        help="Force updating all dependencies of SPEC as well",
                        action="store_true")
    update.add_argument("--precise",
                        dest="PRECISE",
                        help="Update a single dependency to exactly PRECISE (version or git revision)",
                        action="store",
                        type=str,
                        metavar="PRECISE")
    update.add_argument("-w", "--workspace",
                        dest="WORKSPACE",
                        help="Only update the workspace packages",
                        action="store_true")
    update.add_argument("--dry-run",
                        dest="DRY_RUN",
                        help="Don't actually write the lock file",
                        action="store_true")
    _add_global_options(update)

    return parser.parse_args(argv)
