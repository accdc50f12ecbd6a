# Copyright Red Hat
#
# preseed/dirs.py - snapd directory layout and preseed configuration
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Locations of snapd files inside a classic root file system, and the
snap-preseed configuration file.

All snapd paths are kept relative to the root of the target tree; a
``PreseedDirs`` instance binds them to a concrete root directory.
"""
from dataclasses import dataclass
from configparser import ConfigParser, Error as ConfigParserError
from os.path import exists, join
import logging

from ._preseed import PreseedError

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_warn = _log.warning

#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

#: Base directory for snap-preseed configuration
_PRESEED_CFG_DIR = "/etc/snap-preseed"

#: Main configuration file path
PRESEED_CFG_PATH = join(_PRESEED_CFG_DIR, "snap-preseed.conf")

#: Main configuration file section
_PRESEED_CFG_GLOBAL = "Global"

#: MountPath configuration key
_PRESEED_CFG_MOUNT_PATH = "MountPath"

#: Default location, relative to the target root, of the runtime image mount.
DEFAULT_MOUNT_PATH = "/tmp/snapd-preseed"

# snapd state
SNAP_STATE_FILE = "var/lib/snapd/state.json"
SNAP_SYSTEM_KEY_FILE = "var/lib/snapd/system-key"
SNAP_SEED_DIR = "var/lib/snapd/seed"
SNAP_BLOB_DIR = "var/lib/snapd/snaps"
SNAP_ASSERTS_DB_DIR = "var/lib/snapd/assertions"
SNAP_FEATURES_DIR = "var/lib/snapd/features"
SNAP_DEVICE_DIR = "var/lib/snapd/device"
SNAP_COOKIE_DIR = "var/lib/snapd/cookie"
SNAP_SEQ_DIR = "var/lib/snapd/sequence"
SNAP_MOUNT_POLICY_DIR = "var/lib/snapd/mount"
SNAP_APPARMOR_DIR = "var/lib/snapd/apparmor/profiles"
SNAP_SECCOMP_DIR = "var/lib/snapd/seccomp/bpf"
SNAP_INHIBIT_DIR = "var/lib/snapd/inhibit"
SNAP_DESKTOP_FILES_DIR = "var/lib/snapd/desktop/applications"
SNAP_DESKTOP_ICONS_DIR = "var/lib/snapd/desktop/icons"
SNAP_DBUS_SESSION_SERVICES_DIR = "var/lib/snapd/dbus-1/services"
SNAP_DBUS_SYSTEM_SERVICES_DIR = "var/lib/snapd/dbus-1/system-services"

# snap data, caches and runtime state
SNAP_DATA_DIR = "var/snap"
SNAP_CACHE_DIR = "var/cache/snapd"
APPARMOR_CACHE_DIR = "var/cache/apparmor"
SNAP_RUN_DIR = "run/snapd"
SNAP_MOUNT_DIR = "snap"

# system integration
SNAP_SERVICES_DIR = "etc/systemd/system"
SNAP_UDEV_RULES_DIR = "etc/udev/rules.d"
SNAP_DBUS_SYSTEM_POLICY_DIR = "etc/dbus-1/system.d"
COMPLETERS_DIR = "usr/share/bash-completion/completions"

# snapd itself
CORE_LIBEXEC_DIR = "usr/lib/snapd"

#: Completion helper every snap completer symlink points to.
COMPLETE_SH = "complete.sh"

# kernel file systems required inside the chroot
DEV_DIR = "dev"
PROC_DIR = "proc"
SECURITYFS_DIR = "sys/kernel/security"
APPARMOR_SECURITYFS_DIR = "sys/kernel/security/apparmor"


@dataclass(frozen=True)
class PreseedDirs:
    """
    The snapd directory layout bound to a root directory.

    ``root`` is the directory that in-chroot paths are resolved against
    once the preseed process has entered the chroot: ``/`` in normal
    operation.
    """

    root: str = "/"
    mounts_file: str = PROC_MOUNTS

    def path(self, *rel) -> str:
        """
        Return the absolute path of ``rel`` below ``self.root``.

        :param rel: One or more root-relative path components.
        :returns: The joined path.
        :rtype: ``str``
        """
        return join(self.root, *(part.lstrip("/") for part in rel))

    def snapd_binary(self, base: str = "") -> str:
        """
        Return the path to the snapd binary below ``base`` (itself relative
        to ``self.root``).
        """
        return self.path(base, CORE_LIBEXEC_DIR, "snapd")


@dataclass
class PreseedConfig:
    """
    snap-preseed configuration.
    """

    mount_path: str = DEFAULT_MOUNT_PATH

    @classmethod
    def from_file(cls, config_file: str = PRESEED_CFG_PATH) -> "PreseedConfig":
        """
        Load ``PreseedConfig`` from an INI-style configuration file located at
        ``config_file``.

        :param config_file: path to snap-preseed.conf
        :type config_file: ``str``.
        :returns: A ``PreseedConfig`` instance initialised from ``config_file``.
        :rtype: ``PreseedConfig``
        """
        if not exists(config_file):
            return PreseedConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise PreseedError(
                f"cannot parse configuration file {config_file}: {err}"
            ) from err

        mount_path = DEFAULT_MOUNT_PATH
        if cfg.has_option(_PRESEED_CFG_GLOBAL, _PRESEED_CFG_MOUNT_PATH):
            mount_path = cfg[_PRESEED_CFG_GLOBAL][_PRESEED_CFG_MOUNT_PATH].strip()
            if not mount_path.startswith("/"):
                _log_warn(
                    "Ignoring relative %s '%s' in %s",
                    _PRESEED_CFG_MOUNT_PATH,
                    mount_path,
                    config_file,
                )
                mount_path = DEFAULT_MOUNT_PATH

        return PreseedConfig(mount_path=mount_path)
