# Copyright Red Hat
#
# preseed/command.py - Snap preseed command interface
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``preseed.command`` module provides the snap-preseed command line
interface.
"""
from argparse import ArgumentParser
from os.path import basename
import logging
import os

from preseed import (
    PRESEED_DEBUG_MOUNTS,
    PRESEED_DEBUG_RESET,
    PRESEED_DEBUG_SEED,
    PRESEED_DEBUG_COMMAND,
    PRESEED_DEBUG_ALL,
    PRESEED_SUBSYSTEM_COMMAND,
    PreseedError,
    SubsystemFilter,
    set_debug_mask,
    classic,
    reset_preseeded_chroot,
    __version__,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": PRESEED_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


def _preseed_cmd(cmd_args):
    """
    Preseed command handler.

    Preseed the classic root file system given on the command line.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    classic(cmd_args.chroot)
    return 0


def _reset_cmd(cmd_args):
    """
    Reset command handler.

    Remove the artifacts of a previous preseeding run from the root file
    system given on the command line.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    reset_preseeded_chroot(cmd_args.chroot)
    return 0


def setup_logging(cmd_args):
    """
    Set up snap-preseed logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    preseed_log = logging.getLogger("preseed")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    preseed_log.setLevel(level)
    if preseed_log.hasHandlers():
        preseed_log.handlers.clear()

    # Subsystem log filtering
    _preseed_subsystem_filter = SubsystemFilter("preseed")

    _CONSOLE_HANDLER = logging.StreamHandler()
    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_preseed_subsystem_filter)

    preseed_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down snap-preseed logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "mounts": PRESEED_DEBUG_MOUNTS,
        "reset": PRESEED_DEBUG_RESET,
        "seed": PRESEED_DEBUG_SEED,
        "command": PRESEED_DEBUG_COMMAND,
        "all": PRESEED_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def main(args):
    """
    Main entry point for snap-preseed.
    """
    parser = ArgumentParser(
        description="Preseed a classic root file system with snapd",
        prog=basename(args[0]),
    )

    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of snap-preseed",
        version=__version__,
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Reset a preseeded chroot to its un-preseeded state",
    )
    parser.add_argument(
        "chroot",
        metavar="CHROOT",
        type=str,
        help="Path to the root directory of the system to preseed",
    )

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    if os.geteuid() != 0:
        _log_error("snap-preseed must be run as the root user")
        shutdown_logging()
        return status

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    func = _reset_cmd if cmd_args.reset else _preseed_cmd

    if cmd_args.debug:
        status = func(cmd_args)
    else:
        try:
            status = func(cmd_args)
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except PreseedError as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


# vim: set et ts=4 sw=4 :
