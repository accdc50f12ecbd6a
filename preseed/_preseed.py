# Copyright Red Hat
#
# preseed/_preseed.py - Snap preseed global definitions
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level preseed package.
"""
from typing import Optional, Tuple
import logging
import re
import os

_log = logging.getLogger("preseed")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Preseed debugging subsystem mask (legacy interface)
PRESEED_DEBUG_MOUNTS = 1
PRESEED_DEBUG_RESET = 2
PRESEED_DEBUG_SEED = 4
PRESEED_DEBUG_COMMAND = 8
PRESEED_DEBUG_ALL = (
    PRESEED_DEBUG_MOUNTS
    | PRESEED_DEBUG_RESET
    | PRESEED_DEBUG_SEED
    | PRESEED_DEBUG_COMMAND
)

# Preseed debugging subsystem names
PRESEED_SUBSYSTEM_MOUNTS = "preseed.mounts"
PRESEED_SUBSYSTEM_RESET = "preseed.reset"
PRESEED_SUBSYSTEM_SEED = "preseed.seed"
PRESEED_SUBSYSTEM_COMMAND = "preseed.command"

_DEBUG_MASK_TO_SUBSYSTEM = {
    PRESEED_DEBUG_MOUNTS: PRESEED_SUBSYSTEM_MOUNTS,
    PRESEED_DEBUG_RESET: PRESEED_SUBSYSTEM_RESET,
    PRESEED_DEBUG_SEED: PRESEED_SUBSYSTEM_SEED,
    PRESEED_DEBUG_COMMAND: PRESEED_SUBSYSTEM_COMMAND,
}

_debug_subsystems = set()

#: Oldest snapd release that implements the one-shot preseed mode.
MIN_PRESEED_VERSION = "2.43.3"

#: Environment variable that switches snapd into preseed mode.
SNAPD_PRESEED_ENV = "SNAPD_PRESEED"

#: Prefix of the version line in the snapd info file.
_INFO_VERSION_PREFIX = "VERSION="

_VERSION_COMPONENT_RE = re.compile(r"[0-9]+")


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``preseed`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    preseed_log = logging.getLogger("preseed")

    for handler in preseed_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``preseed`` package.

    :param mask: the logical OR of the ``PRESEED_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > PRESEED_DEBUG_ALL:
        raise ValueError(f"Invalid preseed debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    preseed_log = logging.getLogger("preseed")
    for handler in preseed_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Preseed exception types
#


class PreseedError(Exception):
    """
    Base class for snap preseed errors.
    """


class PreseedCalloutError(PreseedError):
    """
    An error calling out to an external program.
    """


class PreseedNotFoundError(PreseedError):
    """
    A required object was not found in the target system.
    """


class PreseedSeedError(PreseedError):
    """
    The seed of the target system could not be read or is incomplete.
    """


class PreseedNotADirectoryError(PreseedError):
    """
    The preseed target does not exist or is not a directory.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'cannot verify "{path}": is not a directory')


class PreseedAlreadyPreseededError(PreseedError):
    """
    The preseed target already contains snapd state.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f'the system at "{path}" appears to be preseeded, '
            "pass --reset flag to clean it up"
        )


class PreseedMissingMountpointsError(PreseedError):
    """
    One or more of the kernel file systems required inside the chroot are
    not mounted.
    """

    def __init__(self, missing):
        self.missing = sorted(missing)
        msg = "cannot preseed without the following mountpoints:\n"
        msg += "".join(f" - {path}\n" for path in self.missing)
        super().__init__(msg)


class PreseedMissingApparmorError(PreseedError):
    """
    The AppArmor security file system is not accessible inside the chroot.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'cannot preseed without access to "{path}"')


class PreseedMountError(PreseedError):
    """
    An error mounting the runtime image.
    """

    def __init__(self, what: str, where: str, status: int, cmd: str, output: str):
        """
        Initialise a new `PreseedMountError` exception.

        :param what: The image that failed to mount.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param cmd: The mount command line as it was executed.
        :param output: The combined output of mount(8).
        """
        self.what, self.where, self.status = what, where, status
        self.cmd, self.output = cmd, output
        msg = (
            f"cannot mount {what} at {where} in preseed mode: exit status {status}\n"
            f"'{cmd}' failed with: {output}"
        )
        super().__init__(msg)


class PreseedUmountError(PreseedError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `PreseedUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"cannot unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


class PreseedVersionError(PreseedError):
    """
    A snapd version string could not be parsed.
    """


class PreseedUnsupportedVersionError(PreseedError):
    """
    The snapd selected for preseeding is too old.
    """

    def __init__(self, version: str, minimum: str = MIN_PRESEED_VERSION):
        self.version, self.minimum = version, minimum
        super().__init__(
            f"snapd {version} from the target system does not support "
            f"preseeding, the minimum required version is {minimum}+"
        )


class PreseedChrootError(PreseedError):
    """
    Entering the preseed chroot failed.
    """

    def __init__(self, path: str, err: Exception):
        self.path, self.err = path, err
        super().__init__(f"cannot chroot into {path}: {err}")


class PreseedRuntimeError(PreseedError):
    """
    snapd failed while running in preseed mode.
    """


class PreseedTargetMissingError(PreseedError):
    """
    The reset target does not exist.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'cannot reset non-existing directory "{path}"')


class PreseedTargetNotDirectoryError(PreseedError):
    """
    The reset target exists but is not a directory.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'cannot reset "{path}", it is not a directory')


class PreseedResetError(PreseedError):
    """
    A preseeding artifact could not be removed.
    """


#
# snapd version handling
#


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Parse a dotted numeric version string into a tuple of integers.

    :param version: A version string such as ``"2.44.3"``.
    :type version: ``str``
    :returns: The version components.
    :rtype: ``Tuple[int, ...]``
    :raises PreseedVersionError: If any component is not a non-negative
                                 integer.
    """
    if not version or not version.strip():
        raise PreseedVersionError("malformed version: empty version string")
    components = []
    for part in version.strip().split("."):
        if not _VERSION_COMPONENT_RE.fullmatch(part):
            raise PreseedVersionError(
                f"malformed version {version!r}: invalid component {part!r}"
            )
        components.append(int(part))
    return tuple(components)


def compare_versions(ver_a: str, ver_b: str) -> int:
    """
    Compare two dotted version strings component by component. Missing
    trailing components are treated as zero.

    :param ver_a: The first version.
    :param ver_b: The second version.
    :returns: -1 if ``ver_a`` is older, 0 if they are equal and 1 if
              ``ver_a`` is newer than ``ver_b``.
    :rtype: ``int``
    """
    comp_a = parse_version(ver_a)
    comp_b = parse_version(ver_b)
    width = max(len(comp_a), len(comp_b))
    comp_a += (0,) * (width - len(comp_a))
    comp_b += (0,) * (width - len(comp_b))
    if comp_a < comp_b:
        return -1
    if comp_a > comp_b:
        return 1
    return 0


def read_info_version(info_dir: str) -> Optional[str]:
    """
    Read the snapd version from the ``info`` file in ``info_dir``.

    :param info_dir: Directory containing the snapd ``info`` file.
    :type info_dir: ``str``
    :returns: The version string, or ``None`` if there is no info file.
    :rtype: ``Optional[str]``
    :raises PreseedVersionError: If the file has no ``VERSION=`` line.
    """
    info_file = os.path.join(info_dir, "info")
    try:
        with open(info_file, "r", encoding="utf8") as fp:
            for line in fp:
                line = line.strip()
                if line.startswith(_INFO_VERSION_PREFIX):
                    return line.removeprefix(_INFO_VERSION_PREFIX)
    except FileNotFoundError:
        _log_debug("No snapd info file at %s", info_file)
        return None
    raise PreseedVersionError(f"cannot find snapd version information in {info_file}")


__all__ = [
    "PRESEED_DEBUG_MOUNTS",
    "PRESEED_DEBUG_RESET",
    "PRESEED_DEBUG_SEED",
    "PRESEED_DEBUG_COMMAND",
    "PRESEED_DEBUG_ALL",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    "PRESEED_SUBSYSTEM_MOUNTS",
    "PRESEED_SUBSYSTEM_RESET",
    "PRESEED_SUBSYSTEM_SEED",
    "PRESEED_SUBSYSTEM_COMMAND",
    # Debug logging - legacy interface
    "set_debug_mask",
    "get_debug_mask",
    "MIN_PRESEED_VERSION",
    "SNAPD_PRESEED_ENV",
    "PreseedError",
    "PreseedCalloutError",
    "PreseedNotFoundError",
    "PreseedSeedError",
    "PreseedNotADirectoryError",
    "PreseedAlreadyPreseededError",
    "PreseedMissingMountpointsError",
    "PreseedMissingApparmorError",
    "PreseedMountError",
    "PreseedUmountError",
    "PreseedVersionError",
    "PreseedUnsupportedVersionError",
    "PreseedChrootError",
    "PreseedRuntimeError",
    "PreseedTargetMissingError",
    "PreseedTargetNotDirectoryError",
    "PreseedResetError",
    "parse_version",
    "compare_versions",
    "read_info_version",
]
