# Copyright Red Hat
#
# vmsnap/command.py - Guest storage manager command interface
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``vmsnap.command`` module provides both the vmsnap command line
interface infrastructure, and a simple procedural interface to the
``vmsnap`` library modules.

The procedural interface is used by the ``vmsnap`` command line tool,
and may be used by application programs, or interactively in the
Python shell by users who do not require all the features present
in the vmsnap object API.
"""
from argparse import ArgumentParser
from os.path import basename
from typing import List, Optional
import logging
import sys
import os

from vmsnap import (
    VMSNAP_DEBUG_MANAGER,
    VMSNAP_DEBUG_COMMAND,
    VMSNAP_DEBUG_BACKEND,
    VMSNAP_DEBUG_IMAGES,
    VMSNAP_DEBUG_ALL,
    VMSNAP_SUBSYSTEM_COMMAND,
    SubsystemFilter,
    set_debug_mask,
    CloneOperation,
    Image,
    Snapshot,
    __version__,
)
from vmsnap.manager import Manager

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None

#: Command names
SNAPSHOT_CMD = "snapshot"
SNAPSHOTS_CMD = "snapshots"
ROLLBACK_CMD = "rollback"
CLONE_CMD = "clone"
IMAGE_TYPE = "image"
LIST_CMD = "list"
CREATE_CMD = "create"
PROVISION_CMD = "provision"
DESTROY_CMD = "destroy"

_IMAGE_LIST_HEADER = ("UUID", "NAME", "CREATED", "DESCRIPTION")


def create_snapshot(manager: Manager, token: str, force: bool = False) -> Snapshot:
    """
    Create a recursive snapshot of the guest named by ``token``.

    :param manager: The manager context to use.
    :param token: A ``guest[@label]`` token.
    :param force: Snapshot the guest even if it is running.
    :returns: The new ``Snapshot``.
    """
    return manager.create_snapshot(token, force=force)


def list_snapshots(manager: Manager, name: str) -> List[str]:
    return manager.list_snapshots(name)


def rollback(manager: Manager, token: str, force: bool = False) -> Snapshot:
    """
    Roll back the guest named by ``token`` to its snapshot label.

    :param manager: The manager context to use.
    :param token: A ``guest@label`` token.
    :param force: Destroy snapshots newer than the label.
    """
    return manager.rollback(token, force=force)


def clone(manager: Manager, source_token: str, target: str) -> CloneOperation:
    return manager.clone(source_token, target)


def create_image(
    manager: Manager, name: str, description: Optional[str] = None
) -> Image:
    return manager.create_image(name, description=description)


def provision_image(manager: Manager, uuid: str, new_name: str) -> Image:
    return manager.provision_image(uuid, new_name)


def destroy_image(manager: Manager, uuid: str):
    manager.destroy_image(uuid)


def print_images(images: List[Image], out=None):
    """
    Print a table of ``images`` to ``out`` (standard output by default).
    The header is printed even if there are no images.
    """
    out = out or sys.stdout
    rows = [_IMAGE_LIST_HEADER] + [
        (image.uuid, image.name or "-", image.created_str, image.description)
        for image in images
    ]
    widths = [max(len(row[col]) for row in rows) for col in range(3)]
    for row in rows:
        fields = [value.ljust(width) for value, width in zip(row, widths)]
        print("  ".join(fields + [row[3]]).rstrip(), file=out)


def _snapshot_cmd(cmd_args):
    """
    Snapshot command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    snapshot = create_snapshot(manager, cmd_args.token, force=cmd_args.force)
    print(snapshot)
    return 0


def _snapshots_cmd(cmd_args):
    """
    List snapshots command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    for label in list_snapshots(manager, cmd_args.guest):
        print(f"{cmd_args.guest}@{label}")
    return 0


def _rollback_cmd(cmd_args):
    """
    Rollback command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    snapshot = rollback(manager, cmd_args.token, force=cmd_args.recursive)
    _log_info("Rolled back %s", snapshot)
    return 0


def _clone_cmd(cmd_args):
    """
    Clone command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    operation = clone(manager, cmd_args.source, cmd_args.target)
    print(operation)
    return 0


def _image_list_cmd(cmd_args):
    """
    Image list command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    print_images(manager.list_images())
    return 0


def _image_create_cmd(cmd_args):
    """
    Image create command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    image = create_image(manager, cmd_args.guest, description=cmd_args.description)
    print(image)
    return 0


def _image_provision_cmd(cmd_args):
    """
    Image provision command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    image = provision_image(manager, cmd_args.uuid, cmd_args.name)
    _log_info("Provisioned %s from image %s", cmd_args.name, image.uuid)
    return 0


def _image_destroy_cmd(cmd_args):
    """
    Image destroy command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    manager = Manager()
    destroy_image(manager, cmd_args.uuid)
    return 0


def setup_logging(cmd_args):
    """
    Set up vmsnap logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    vmsnap_log = logging.getLogger("vmsnap")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    vmsnap_log.setLevel(level)
    if vmsnap_log.hasHandlers():
        vmsnap_log.handlers.clear()

    # Subsystem log filtering
    _vmsnap_subsystem_filter = SubsystemFilter("vmsnap")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_vmsnap_subsystem_filter)

    vmsnap_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down vmsnap logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": VMSNAP_DEBUG_MANAGER,
        "command": VMSNAP_DEBUG_COMMAND,
        "backend": VMSNAP_DEBUG_BACKEND,
        "images": VMSNAP_DEBUG_IMAGES,
        "all": VMSNAP_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_image_subparser(cmd_subparser):
    """
    Add subparser for 'image' commands.

    :param cmd_subparser: Command subparser
    """
    image_parser = cmd_subparser.add_parser(IMAGE_TYPE, help="Guest image commands")
    image_subparser = image_parser.add_subparsers(dest="image_command")

    # image list subcommand
    image_list_parser = image_subparser.add_parser(LIST_CMD, help="List images")
    image_list_parser.set_defaults(func=_image_list_cmd)

    # image create subcommand
    image_create_parser = image_subparser.add_parser(
        CREATE_CMD, help="Package a guest into a new image"
    )
    image_create_parser.add_argument(
        "-d",
        "--description",
        metavar="DESCRIPTION",
        type=str,
        help="A description of the new image",
    )
    image_create_parser.add_argument("guest", metavar="GUEST", type=str)
    image_create_parser.set_defaults(func=_image_create_cmd)

    # image provision subcommand
    image_provision_parser = image_subparser.add_parser(
        PROVISION_CMD, help="Create a new guest from an image"
    )
    image_provision_parser.add_argument("uuid", metavar="UUID", type=str)
    image_provision_parser.add_argument("name", metavar="NAME", type=str)
    image_provision_parser.set_defaults(func=_image_provision_cmd)

    # image destroy subcommand
    image_destroy_parser = image_subparser.add_parser(
        DESTROY_CMD, help="Remove an image and its data"
    )
    image_destroy_parser.add_argument("uuid", metavar="UUID", type=str)
    image_destroy_parser.set_defaults(func=_image_destroy_cmd)


def main(args):
    """
    Main entry point for vmsnap.
    """
    parser = ArgumentParser(
        description="Guest Storage Manager", prog=basename(args[0])
    )

    # Global arguments
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
        help="Report the version number of vmsnap",
        version=__version__,
    )
    cmd_subparser = parser.add_subparsers(dest="command", help="Command")

    # snapshot command
    snapshot_parser = cmd_subparser.add_parser(
        SNAPSHOT_CMD, help="Create a recursive guest snapshot"
    )
    snapshot_parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Snapshot the guest even if it is running",
    )
    snapshot_parser.add_argument("token", metavar="GUEST[@LABEL]", type=str)
    snapshot_parser.set_defaults(func=_snapshot_cmd)

    # snapshots command
    snapshots_parser = cmd_subparser.add_parser(
        SNAPSHOTS_CMD, help="List guest snapshots"
    )
    snapshots_parser.add_argument("guest", metavar="GUEST", type=str)
    snapshots_parser.set_defaults(func=_snapshots_cmd)

    # rollback command
    rollback_parser = cmd_subparser.add_parser(
        ROLLBACK_CMD, help="Roll a guest back to a snapshot"
    )
    rollback_parser.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        help="Destroy snapshots newer than the rollback target",
    )
    rollback_parser.add_argument("token", metavar="GUEST@LABEL", type=str)
    rollback_parser.set_defaults(func=_rollback_cmd)

    # clone command
    clone_parser = cmd_subparser.add_parser(CLONE_CMD, help="Clone a guest")
    clone_parser.add_argument("source", metavar="SOURCE[@LABEL]", type=str)
    clone_parser.add_argument("target", metavar="NEW_GUEST", type=str)
    clone_parser.set_defaults(func=_clone_cmd)

    _add_image_subparser(cmd_subparser)

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
        _log_error("vmsnap must be run as the root user")
        shutdown_logging()
        return status

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return status

    if cmd_args.debug:
        status = cmd_args.func(cmd_args)
    else:
        try:
            status = cmd_args.func(cmd_args)
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


# vim: set et ts=4 sw=4 :
