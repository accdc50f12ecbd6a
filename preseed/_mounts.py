# Copyright Red Hat
#
# preseed/_mounts.py - Snap preseed mount support
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Chroot validation and runtime image mount support for snap preseeding.
"""
from subprocess import run, CalledProcessError, PIPE, STDOUT
from contextlib import contextmanager
from typing import Iterator, List, Optional
import collections
import logging
import os.path
import os

import magic

from ._preseed import (
    PRESEED_SUBSYSTEM_MOUNTS,
    PreseedError,
    PreseedCalloutError,
    PreseedNotADirectoryError,
    PreseedAlreadyPreseededError,
    PreseedMissingMountpointsError,
    PreseedMissingApparmorError,
    PreseedMountError,
    PreseedUmountError,
)
from .dirs import (
    PROC_MOUNTS,
    SNAP_STATE_FILE,
    DEV_DIR,
    PROC_DIR,
    SECURITYFS_DIR,
    APPARMOR_SECURITYFS_DIR,
    PreseedDirs,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": PRESEED_SUBSYSTEM_MOUNTS}, **kwargs)


#: Kernel file systems that must be mounted inside the chroot.
_REQUIRED_MOUNTS: List[str] = [
    SECURITYFS_DIR,
    PROC_DIR,
    DEV_DIR,
]

#: File system type of snap images.
RUNTIME_IMAGE_FSTYPE = "squashfs"

#: Mount options for the runtime image: read-only and hidden from desktop
#: volume monitors.
RUNTIME_IMAGE_OPTIONS = "ro,x-gdu.hide,x-gvfs-hide"

#: Prefix of the libmagic description of a squashfs image.
_SQUASHFS_MAGIC = "Squashfs filesystem"


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


class ProcMountsReader:
    """Reader for /proc/mounts format files."""

    # Define a named tuple to give structure to each /proc/mounts entry.
    MountsEntry = collections.namedtuple(
        "MountsEntry", ["what", "where", "fstype", "options", "freq", "passno"]
    )

    def __init__(self, path=PROC_MOUNTS):
        """Initialize with the path to a mounts file.

        :param path: Path to the mounts file (e.g., '/proc/mounts')
        """
        self.path = path

    def entries(self) -> Iterator["ProcMountsReader.MountsEntry"]:
        """Iterate over all entries in the mounts file.

        :returns: Yields ``MountsEntry`` objects with unescaped paths.
        """
        with open(self.path, "r", encoding="utf8") as fp:
            for line in fp:
                line = line.strip()
                if not line:
                    continue

                parts = line.split()
                if len(parts) == 6:
                    parts[0] = _unescape_mounts(parts[0])
                    parts[1] = _unescape_mounts(parts[1])
                    yield self.MountsEntry(*parts)
                else:
                    _log_warn("Skipping malformed %s line: %s", self.path, line)

    def mount_points(self) -> List[str]:
        """Return the list of mount points in the mounts file.

        :returns: Normalised mount point paths.
        :rtype: ``List[str]``
        """
        return [os.path.normpath(entry.where) for entry in self.entries()]


def check_chroot(chroot_dir: str, dirs: Optional[PreseedDirs] = None):
    """
    Verify that ``chroot_dir`` can be preseeded: it must be a directory that
    has not been preseeded yet, with the kernel file systems snapd needs
    mounted and AppArmor available.

    :param chroot_dir: Absolute path to the target root directory.
    :type chroot_dir: ``str``
    :param dirs: Directory layout providing the mount table location.
    :type dirs: ``PreseedDirs``
    :raises PreseedNotADirectoryError: ``chroot_dir`` is not a directory.
    :raises PreseedAlreadyPreseededError: snapd state already exists.
    :raises PreseedMissingMountpointsError: required mounts are missing.
    :raises PreseedMissingApparmorError: AppArmor is not accessible.
    """
    dirs = dirs or PreseedDirs()

    if not os.path.isdir(chroot_dir):
        raise PreseedNotADirectoryError(chroot_dir)

    if os.path.exists(os.path.join(chroot_dir, SNAP_STATE_FILE)):
        raise PreseedAlreadyPreseededError(chroot_dir)

    required = {os.path.join(chroot_dir, rel) for rel in _REQUIRED_MOUNTS}
    try:
        mounted = set(ProcMountsReader(dirs.mounts_file).mount_points())
    except OSError as err:
        raise PreseedError(
            f"cannot read mount table {dirs.mounts_file}: {err}"
        ) from err

    missing = required - mounted
    if missing:
        raise PreseedMissingMountpointsError(missing)

    apparmor = os.path.join(chroot_dir, APPARMOR_SECURITYFS_DIR)
    if not os.path.isdir(apparmor) or not os.access(apparmor, os.R_OK):
        raise PreseedMissingApparmorError(apparmor)

    _log_debug_mounts("Chroot %s passed mount point checks", chroot_dir)


def _check_image(image: str):
    """
    Warn if ``image`` exists but does not look like a squashfs image.

    :param image: Path to the runtime image.
    """
    if not os.path.isfile(image):
        return

    # c9s magic does not have magic.error
    if hasattr(magic, "error"):
        magic_errors = (magic.error, OSError, ValueError)
    else:
        magic_errors = (OSError, ValueError)

    try:
        description = magic.detect_from_filename(image).name
    except magic_errors as err:
        _log_debug_mounts("Cannot detect file type of %s: %s", image, err)
        return

    if not description.startswith(_SQUASHFS_MAGIC):
        _log_warn("Runtime image %s does not look like a snap: %s", image, description)


def _mount(what: str, where: str):
    """
    Call the mount program to mount a runtime image read-only.

    :param what: The image to mount.
    :param where: The path to the mount point.
    """
    mount_cmd = [
        "mount",
        "-t",
        RUNTIME_IMAGE_FSTYPE,
        "-o",
        RUNTIME_IMAGE_OPTIONS,
        what,
        where,
    ]
    _log_debug_mounts("Calling %s", " ".join(mount_cmd))

    try:
        run(
            mount_cmd,
            check=True,
            stdout=PIPE,
            stderr=STDOUT,
            encoding="utf8",
        )
    except FileNotFoundError as err:
        raise PreseedCalloutError(f"mount not found: {err}") from err
    except CalledProcessError as err:
        raise PreseedMountError(
            what, where, err.returncode, " ".join(mount_cmd), err.output or ""
        ) from err


def _umount(where: str):
    """
    Call the umount program to unmount a file system.

    :param where: The mount point to be unmounted.
    """
    umount_cmd = ["umount", where]
    _log_debug_mounts("Calling %s", " ".join(umount_cmd))
    try:
        run(
            umount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
        )
    except FileNotFoundError as err:
        raise PreseedCalloutError(f"umount not found: {err}") from err
    except CalledProcessError as err:
        raise PreseedUmountError(where, err.returncode, err.stderr) from err


class RuntimeImageMount:
    """
    The snapd runtime image mounted at ``mount_path`` inside a chroot.
    """

    def __init__(self, image: str, root: str, mount_path: str):
        """
        Initialise a new runtime image mount.

        :param image: Path to the snap image providing snapd.
        :param root: The root directory of the target tree.
        :param mount_path: Absolute location of the mount inside ``root``.
        """
        self.image = image
        self.root = root
        self.mount_path = mount_path
        self.mounted = False
        self._created = False

    @property
    def where(self) -> str:
        """
        The mount point as seen from the current root of this process.
        """
        return os.path.join(self.root, self.mount_path.lstrip("/"))

    def enter_chroot(self, root: str):
        """
        Record that the process now sees the target tree at ``root``.
        """
        self.root = root

    def mount(self):
        """
        Create the mount point if needed and mount the runtime image on it.
        """
        where = self.where
        if not os.path.isdir(where):
            try:
                os.makedirs(where, mode=0o755)
            except OSError as err:
                raise PreseedError(
                    f"cannot create mount point {where}: {err}"
                ) from err
            self._created = True

        _check_image(self.image)
        try:
            _mount(self.image, where)
        except PreseedError:
            self._remove_mount_point()
            raise
        self.mounted = True
        _log_info("Mounted %s at %s", self.image, where)

    def umount(self):
        """
        Unmount the runtime image and remove the mount point if it was
        created by ``mount()``. Failures are logged and not raised.
        """
        if not self.mounted:
            return
        where = self.where
        _log_info("Unmounting %s", where)
        try:
            _umount(where)
            self.mounted = False
        except PreseedError as err:
            _log_error("Failed to unmount runtime image: %s", err)
            return
        self._remove_mount_point()

    def _remove_mount_point(self):
        if not self._created:
            return
        try:
            os.rmdir(self.where)
            self._created = False
        except OSError as err:
            _log_warn("Cannot remove mount point %s: %s", self.where, err)


@contextmanager
def mount_runtime_image(root: str, image: str, mount_path: str):
    """
    Context manager mounting ``image`` at ``mount_path`` inside ``root`` and
    unmounting it when the context exits, whether normally or with an
    exception.

    :param root: The root directory of the target tree.
    :param image: Path to the snap image providing snapd.
    :param mount_path: Absolute location of the mount inside ``root``.
    :returns: The ``RuntimeImageMount`` for the mounted image.
    """
    mount = RuntimeImageMount(image, root, mount_path)
    mount.mount()
    try:
        yield mount
    finally:
        mount.umount()
