# Copyright Red Hat
#
# preseed/_reset.py - Snap preseed reset support
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Remove the artifacts of a preseeding run from a target root file system.
"""
from typing import List, NamedTuple
from enum import Enum
import logging
import shutil
import glob
import os

from ._preseed import (
    PRESEED_SUBSYSTEM_RESET,
    PreseedResetError,
    PreseedTargetMissingError,
    PreseedTargetNotDirectoryError,
)
from .dirs import (
    SNAP_STATE_FILE,
    SNAP_SYSTEM_KEY_FILE,
    SNAP_BLOB_DIR,
    SNAP_ASSERTS_DB_DIR,
    SNAP_FEATURES_DIR,
    SNAP_DEVICE_DIR,
    SNAP_COOKIE_DIR,
    SNAP_SEQ_DIR,
    SNAP_MOUNT_POLICY_DIR,
    SNAP_APPARMOR_DIR,
    SNAP_SECCOMP_DIR,
    SNAP_INHIBIT_DIR,
    SNAP_DESKTOP_FILES_DIR,
    SNAP_DESKTOP_ICONS_DIR,
    SNAP_DBUS_SESSION_SERVICES_DIR,
    SNAP_DBUS_SYSTEM_SERVICES_DIR,
    SNAP_DATA_DIR,
    SNAP_CACHE_DIR,
    APPARMOR_CACHE_DIR,
    SNAP_RUN_DIR,
    SNAP_MOUNT_DIR,
    SNAP_SERVICES_DIR,
    SNAP_UDEV_RULES_DIR,
    SNAP_DBUS_SYSTEM_POLICY_DIR,
    COMPLETERS_DIR,
    COMPLETE_SH,
    PreseedDirs,
)

_log = logging.getLogger(__name__)

_log_info = _log.info


def _log_debug_reset(msg, *args, **kwargs):
    """A wrapper for reset subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": PRESEED_SUBSYSTEM_RESET}, **kwargs)


class ArtifactKind(Enum):
    """
    How a preseeding artifact is removed.
    """

    #: A file, symlink or directory tree matched by a root-relative glob.
    TREE = "tree"
    #: snap completion symlinks in a bash-completion directory.
    COMPLETER_SYMLINKS = "completer-symlinks"


class ArtifactEntry(NamedTuple):
    """
    A root-relative path or glob naming preseeding artifacts.
    """

    pattern: str
    kind: ArtifactKind = ArtifactKind.TREE


def _wants(target: str) -> str:
    return os.path.join(SNAP_SERVICES_DIR, f"{target}.wants", "snap-*.mount")


#: Everything a preseeding run may leave behind. The state file is last so
#: that an interrupted reset still leaves the tree marked as preseeded.
ARTIFACT_CATALOG: List[ArtifactEntry] = [
    ArtifactEntry(SNAP_SYSTEM_KEY_FILE),
    ArtifactEntry(os.path.join(SNAP_BLOB_DIR, "*.snap")),
    ArtifactEntry(os.path.join(SNAP_UDEV_RULES_DIR, "*-snap.*.rules")),
    ArtifactEntry(os.path.join(SNAP_DBUS_SYSTEM_POLICY_DIR, "snap.*.*.conf")),
    ArtifactEntry(os.path.join(SNAP_DBUS_SESSION_SERVICES_DIR, "*.service")),
    ArtifactEntry(os.path.join(SNAP_DBUS_SYSTEM_SERVICES_DIR, "*.service")),
    ArtifactEntry(os.path.join(SNAP_SERVICES_DIR, "snap.*.service")),
    ArtifactEntry(os.path.join(SNAP_SERVICES_DIR, "snap.*.timer")),
    ArtifactEntry(os.path.join(SNAP_SERVICES_DIR, "snap.*.socket")),
    ArtifactEntry(os.path.join(SNAP_SERVICES_DIR, "snap-*.mount")),
    ArtifactEntry(_wants("multi-user.target")),
    ArtifactEntry(_wants("default.target")),
    ArtifactEntry(_wants("snapd.mounts.target")),
    ArtifactEntry(os.path.join(SNAP_DATA_DIR, "*")),
    ArtifactEntry(os.path.join(SNAP_CACHE_DIR, "*")),
    ArtifactEntry(os.path.join(APPARMOR_CACHE_DIR, "*")),
    ArtifactEntry(os.path.join(SNAP_DESKTOP_FILES_DIR, "*.desktop")),
    ArtifactEntry(os.path.join(SNAP_DESKTOP_ICONS_DIR, "*")),
    ArtifactEntry(os.path.join(SNAP_RUN_DIR, "*")),
    ArtifactEntry(COMPLETERS_DIR, ArtifactKind.COMPLETER_SYMLINKS),
    ArtifactEntry(SNAP_ASSERTS_DB_DIR),
    ArtifactEntry(SNAP_FEATURES_DIR),
    ArtifactEntry(SNAP_DEVICE_DIR),
    ArtifactEntry(SNAP_COOKIE_DIR),
    ArtifactEntry(SNAP_SEQ_DIR),
    ArtifactEntry(SNAP_MOUNT_POLICY_DIR),
    ArtifactEntry(SNAP_APPARMOR_DIR),
    ArtifactEntry(SNAP_SECCOMP_DIR),
    ArtifactEntry(SNAP_MOUNT_DIR),
    ArtifactEntry(SNAP_INHIBIT_DIR),
    ArtifactEntry(SNAP_STATE_FILE),
]


def _remove(path: str):
    """
    Remove ``path``: symlinks and files are unlinked, directories removed
    recursively. A path that does not exist is not an error.

    :param path: The path to remove.
    :raises PreseedResetError: If the path exists and cannot be removed.
    """
    try:
        if os.path.islink(path) or not os.path.isdir(path):
            os.unlink(path)
        else:
            shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as err:
        raise PreseedResetError(f"error removing {path}: {err}") from err
    _log_debug_reset("Removed %s", path)


def _is_snap_completer(target: str) -> bool:
    return os.path.basename(target) == COMPLETE_SH


def _remove_completer_symlinks(completers_dir: str):
    """
    Remove the snap completion symlinks in ``completers_dir``: links to the
    snapd completion helper, and links to those links (command aliases).
    Regular files and unrelated symlinks are kept.

    :param completers_dir: Absolute path to the bash-completion directory.
    """
    try:
        names = os.listdir(completers_dir)
    except (FileNotFoundError, NotADirectoryError):
        return
    except OSError as err:
        raise PreseedResetError(f"error reading {completers_dir}: {err}") from err

    links = {}
    for name in names:
        path = os.path.join(completers_dir, name)
        if os.path.islink(path):
            links[name] = os.readlink(path)

    snap_completers = {name for name, target in links.items() if _is_snap_completer(target)}
    # Aliases point at a snap completer in the same directory, either by
    # relative name or by absolute path in the host or in-chroot view.
    in_chroot_dir = "/" + COMPLETERS_DIR
    same_dir = (os.path.normpath(completers_dir), in_chroot_dir)
    aliases = set()
    for name, target in links.items():
        target = os.path.normpath(os.path.join(in_chroot_dir, target))
        if os.path.dirname(target) in same_dir and os.path.basename(target) in snap_completers:
            aliases.add(name)

    for name in sorted(snap_completers | aliases):
        _remove(os.path.join(completers_dir, name))


def _remove_artifact(dirs: PreseedDirs, entry: ArtifactEntry):
    if entry.kind == ArtifactKind.COMPLETER_SYMLINKS:
        _remove_completer_symlinks(dirs.path(entry.pattern))
        return
    pattern = os.path.join(glob.escape(dirs.root), entry.pattern)
    for path in sorted(glob.glob(pattern, include_hidden=True)):
        _remove(path)


def reset_preseeded_chroot(path: str):
    """
    Remove all preseeding artifacts from the root file system at ``path``,
    returning it to an un-preseeded state. Resetting a tree that was never
    preseeded, or that was already reset, succeeds.

    :param path: Path to the target root directory. Relative paths are
                 resolved against the current working directory.
    :type path: ``str``
    :raises PreseedTargetMissingError: ``path`` does not exist.
    :raises PreseedTargetNotDirectoryError: ``path`` is not a directory.
    :raises PreseedResetError: An artifact could not be removed.
    """
    dirs = PreseedDirs(root=os.path.abspath(path))

    if not os.path.lexists(dirs.root):
        raise PreseedTargetMissingError(dirs.root)
    if not os.path.isdir(dirs.root):
        raise PreseedTargetNotDirectoryError(dirs.root)

    _log_info("Resetting preseeded chroot %s", dirs.root)
    for entry in ARTIFACT_CATALOG:
        _log_debug_reset("Removing %s (%s)", entry.pattern, entry.kind.value)
        _remove_artifact(dirs, entry)
    _log_info("Reset of %s complete", dirs.root)
