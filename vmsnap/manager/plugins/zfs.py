# Copyright Red Hat
#
# vmsnap/manager/plugins/zfs.py - Guest storage manager ZFS plugin
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
ZFS guest storage backend plugin
"""
from subprocess import run, Popen, CalledProcessError, PIPE, DEVNULL
from os.path import exists as path_exists
from tempfile import TemporaryFile
from shutil import which, copyfileobj
from os import environ
import sys

from vmsnap import (
    VMSNAP_SUBSYSTEM_BACKEND,
    VmsnapCalloutError,
    VmsnapNotFoundError,
)
from vmsnap.manager.plugins import Plugin, plugin_command

# Main zfs executable
ZFS_CMD = "zfs"

# zfs subcommands
ZFS_LIST = "list"
ZFS_CREATE = "create"
ZFS_DESTROY = "destroy"
ZFS_RENAME = "rename"
ZFS_SNAPSHOT = "snapshot"
ZFS_ROLLBACK = "rollback"
ZFS_CLONE = "clone"
ZFS_SEND = "send"
ZFS_RECEIVE = "receive"

# zfs command options
ZFS_NO_HEADERS = "-H"
ZFS_FIELDS = "-o"
ZFS_PROPERTY = "-o"
ZFS_TYPES = "-t"
ZFS_DEPTH = "-d"
ZFS_SORT = "-s"
ZFS_RECURSIVE = "-r"
ZFS_FORCE = "-f"
ZFS_SPARSE = "-s"
ZFS_VOLSIZE = "-V"
ZFS_REPLICATE = "-R"

# zfs list fields and types
ZFS_FIELD_NAME = "name"
ZFS_FIELDS_MOUNT = "mounted,mountpoint"
ZFS_TYPES_TREE = "filesystem,volume"
ZFS_TYPE_SNAPSHOT = "snapshot"
ZFS_SORT_CREATETXG = "createtxg"

# zfs mountpoint values that do not name a live mount
ZFS_MOUNTED_YES = "yes"
_ZFS_NO_MOUNTPOINT = ("-", "none", "legacy")

ZFS_SNAPSHOT_SEP = "@"

# Kernel module checks
_SYS_MODULE_ZFS = "/sys/module/zfs"
KLDSTAT_CMD = "kldstat"
KLDSTAT_QUIET = "-q"
KLDSTAT_MODULE = "-m"
ZFS_MODULE = "zfs"

# Block size for streaming send and receive data
_STREAM_CHUNK_SIZE = 2**20


def _decode_stderr(err):
    """
    Decode and strip the stderr member of a ``CalledProcessError`` and
    return the result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    return err.stderr.decode("utf8").strip()


def _read_stderr(errfile):
    """
    Return the contents of a spooled stderr temporary file as a string.
    """
    errfile.seek(0)
    return errfile.read().decode("utf8").strip()


def _callout_error(cmd, status, stderr):
    """
    Build a ``VmsnapCalloutError`` carrying the backend diagnostic
    ``stderr`` verbatim, or a generic message if it printed nothing.
    """
    if stderr:
        return VmsnapCalloutError(stderr)
    return VmsnapCalloutError(f"{cmd} failed with status {status}")


def _check_zfs_present(zfs_cmd):
    """
    Check for the presence of the zfs command.

    :raises: ``VmsnapNotFoundError`` if required dependencies are not found.
    """
    if not which(zfs_cmd):
        raise VmsnapNotFoundError("ZFS commands not found")


def snapshot_name(dataset, label):
    """
    Format a ZFS snapshot name from ``dataset`` and ``label``.
    """
    return f"{dataset}{ZFS_SNAPSHOT_SEP}{label}"


def format_options(options):
    """
    Rewrite a list of ``key=value`` creation options into repeated
    ``-o key=value`` zfs arguments.
    """
    args = []
    for option in options or []:
        args.extend([ZFS_PROPERTY, option])
    return args


class Zfs(Plugin):
    """
    ZFS copy-on-write guest storage backend.
    """

    name = "zfs"
    version = "0.1.0"
    marker = "zfs"

    def _run(
        self,
        *popenargs,
        # subprocess.run() hits the same pylint warning.
        input=None,  # pylint: disable=redefined-builtin
        capture_output=False,
        timeout=None,
        check=False,
        **kwargs,
    ):
        """
        Thin wrapper around ``subprocess.run`` to enforce environment
        sanitization.

        Refer to the function documentation for the ``run`` function for a
        full description of arguments and keyword arguments: ``Zfs._run()``
        behaves identically, other than setting the ``env`` keyword argument
        to the value of ``self._env``.
        """
        kwargs["env"] = self._env | kwargs["env"] if "env" in kwargs else self._env
        self.logger.debug(
            "Calling: '%s'",
            " ".join(popenargs[0]),
            extra={"subsystem": VMSNAP_SUBSYSTEM_BACKEND},
        )
        return run(
            *popenargs,
            input=input,
            capture_output=capture_output,
            timeout=timeout,
            check=check,
            **kwargs,
        )

    def _zfs(self, *args):
        """
        Run ``zfs`` with ``args`` and return its stripped standard output.

        :raises: ``VmsnapCalloutError`` with the zfs diagnostic on failure.
        """
        zfs_cmd_args = [self._zfs_cmd, *args]
        try:
            zfs_cmd = self._run(zfs_cmd_args, capture_output=True, check=True)
        except CalledProcessError as err:
            raise _callout_error(
                f"{ZFS_CMD} {args[0]}", err.returncode, _decode_stderr(err)
            ) from err
        return zfs_cmd.stdout.decode("utf8").strip()

    def _zfs_status(self, *args):
        """
        Run ``zfs`` with ``args`` and return ``True`` if it succeeded.
        """
        zfs_cmd = self._run([self._zfs_cmd, *args], capture_output=True)
        return zfs_cmd.returncode == 0

    def __init__(self, logger, plugin_cfg):
        super().__init__(logger, plugin_cfg)

        self._zfs_cmd = plugin_command(plugin_cfg, "Zfs", ZFS_CMD)

        self._env = environ.copy()
        self._env["LC_ALL"] = "C"

        _check_zfs_present(self._zfs_cmd)

    def is_active(self):
        if sys.platform.startswith("linux"):
            return path_exists(_SYS_MODULE_ZFS)
        kldstat_cmd = self._run(
            [KLDSTAT_CMD, KLDSTAT_QUIET, KLDSTAT_MODULE, ZFS_MODULE],
            capture_output=True,
        )
        return kldstat_cmd.returncode == 0

    def mount_point(self, dataset):
        zfs_cmd = self._run(
            [self._zfs_cmd, ZFS_LIST, ZFS_NO_HEADERS, ZFS_FIELDS, ZFS_FIELDS_MOUNT, dataset],
            capture_output=True,
        )
        if zfs_cmd.returncode != 0:
            self._log_debug(
                "No mount point for %s: %s", dataset, zfs_cmd.stderr.decode("utf8").strip()
            )
            return None
        fields = zfs_cmd.stdout.decode("utf8").strip().split("\t")
        if len(fields) != 2:
            return None
        (mounted, mountpoint) = fields
        if mounted != ZFS_MOUNTED_YES or mountpoint in _ZFS_NO_MOUNTPOINT:
            return None
        return mountpoint

    def dataset_exists(self, dataset):
        return self._zfs_status(ZFS_LIST, ZFS_NO_HEADERS, ZFS_FIELDS, ZFS_FIELD_NAME, dataset)

    def create_dataset(self, dataset, options):
        self._zfs(ZFS_CREATE, *format_options(options), dataset)

    def destroy_dataset(self, dataset):
        self._zfs(ZFS_DESTROY, ZFS_RECURSIVE, ZFS_FORCE, dataset)

    def rename_dataset(self, old_dataset, new_dataset):
        self._zfs(ZFS_RENAME, old_dataset, new_dataset)

    def create_volume(self, dataset, size, sparse, options):
        sparse_args = [ZFS_SPARSE] if sparse else []
        self._zfs(
            ZFS_CREATE, *sparse_args, ZFS_VOLSIZE, size, *format_options(options), dataset
        )

    def create_snapshot(self, dataset, label, recursive=True):
        recursive_args = [ZFS_RECURSIVE] if recursive else []
        self._zfs(ZFS_SNAPSHOT, *recursive_args, snapshot_name(dataset, label))

    def destroy_snapshot(self, dataset, label, recursive=True):
        recursive_args = [ZFS_RECURSIVE] if recursive else []
        self._zfs(ZFS_DESTROY, *recursive_args, snapshot_name(dataset, label))

    def list_datasets(self, dataset):
        output = self._zfs(
            ZFS_LIST,
            ZFS_NO_HEADERS,
            ZFS_FIELDS,
            ZFS_FIELD_NAME,
            ZFS_RECURSIVE,
            ZFS_TYPES,
            ZFS_TYPES_TREE,
            dataset,
        )
        return [line for line in output.splitlines() if line]

    def list_snapshots(self, dataset):
        output = self._zfs(
            ZFS_LIST,
            ZFS_NO_HEADERS,
            ZFS_FIELDS,
            ZFS_FIELD_NAME,
            ZFS_TYPES,
            ZFS_TYPE_SNAPSHOT,
            ZFS_DEPTH,
            "1",
            ZFS_SORT,
            ZFS_SORT_CREATETXG,
            dataset,
        )
        labels = []
        for line in output.splitlines():
            (name, sep, label) = line.partition(ZFS_SNAPSHOT_SEP)
            if sep and name == dataset:
                labels.append(label)
        return labels

    def snapshot_exists(self, dataset, label):
        return self._zfs_status(
            ZFS_LIST,
            ZFS_NO_HEADERS,
            ZFS_FIELDS,
            ZFS_FIELD_NAME,
            ZFS_TYPES,
            ZFS_TYPE_SNAPSHOT,
            snapshot_name(dataset, label),
        )

    def rollback(self, dataset, label, destroy_newer=False):
        newer_args = [ZFS_RECURSIVE] if destroy_newer else []
        self._zfs(ZFS_ROLLBACK, *newer_args, snapshot_name(dataset, label))

    def clone(self, dataset, label, target):
        self._zfs(ZFS_CLONE, snapshot_name(dataset, label), target)

    def send(self, dataset, label, writer):
        zfs_cmd_args = [self._zfs_cmd, ZFS_SEND, ZFS_REPLICATE, snapshot_name(dataset, label)]
        self.logger.debug(
            "Streaming: '%s'",
            " ".join(zfs_cmd_args),
            extra={"subsystem": VMSNAP_SUBSYSTEM_BACKEND},
        )
        with TemporaryFile() as errfile:
            with Popen(zfs_cmd_args, stdout=PIPE, stderr=errfile, env=self._env) as proc:
                copyfileobj(proc.stdout, writer, _STREAM_CHUNK_SIZE)
                proc.stdout.close()
                status = proc.wait()
            if status != 0:
                raise _callout_error(f"{ZFS_CMD} {ZFS_SEND}", status, _read_stderr(errfile))

    def receive(self, dataset, reader):
        zfs_cmd_args = [self._zfs_cmd, ZFS_RECEIVE, dataset]
        self.logger.debug(
            "Streaming: '%s'",
            " ".join(zfs_cmd_args),
            extra={"subsystem": VMSNAP_SUBSYSTEM_BACKEND},
        )
        broken_pipe = False
        with TemporaryFile() as errfile:
            with Popen(
                zfs_cmd_args, stdin=PIPE, stdout=DEVNULL, stderr=errfile, env=self._env
            ) as proc:
                # zfs receive may exit early: its status and stderr say why.
                try:
                    copyfileobj(reader, proc.stdin, _STREAM_CHUNK_SIZE)
                except BrokenPipeError:
                    broken_pipe = True
                finally:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        broken_pipe = True
                status = proc.wait()
            if status != 0:
                raise _callout_error(
                    f"{ZFS_CMD} {ZFS_RECEIVE}", status, _read_stderr(errfile)
                )
        if broken_pipe:
            raise VmsnapCalloutError(
                f"{ZFS_CMD} {ZFS_RECEIVE} closed its input before the end of the stream"
            )


__all__ = [
    "Zfs",
]
