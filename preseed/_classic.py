# Copyright Red Hat
#
# preseed/_classic.py - Snap preseed for classic systems
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Preseed a classic root file system by running snapd from the target system
in preseed mode inside a chroot.
"""
from subprocess import run
from typing import Callable, NamedTuple, Optional
import logging
import os

from ._preseed import (
    MIN_PRESEED_VERSION,
    SNAPD_PRESEED_ENV,
    PreseedNotFoundError,
    PreseedUnsupportedVersionError,
    PreseedChrootError,
    PreseedRuntimeError,
    compare_versions,
    read_info_version,
)
from .dirs import (
    CORE_LIBEXEC_DIR,
    SNAP_SEED_DIR,
    PreseedDirs,
    PreseedConfig,
)
from ._mounts import RuntimeImageMount, check_chroot, mount_runtime_image
from ._seed import SeedSnapResolver

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


class TargetSnapd(NamedTuple):
    """
    The snapd binary selected to run the preseeding.
    """

    #: Path to the snapd binary as seen from inside the chroot.
    path: str
    #: Version of the snapd binary.
    version: str


def _syscall_chroot(path: str):
    """
    Change the root directory of this process to ``path``.
    """
    os.chroot(path)
    os.chdir("/")


def choose_target_snapd(
    mount: RuntimeImageMount, chroot_dir: str, dirs: PreseedDirs
) -> TargetSnapd:
    """
    Choose between the snapd in the mounted runtime image and the snapd
    installed in the target tree, preferring the newer one. When only one is
    present it is used; the runtime image wins a tie.

    :param mount: The mounted runtime image.
    :param chroot_dir: Absolute path to the target tree.
    :param dirs: Directory layout used to build in-chroot paths.
    :returns: The selected snapd.
    :rtype: ``TargetSnapd``
    :raises PreseedNotFoundError: Neither location provides snapd.
    :raises PreseedUnsupportedVersionError: The selected snapd is too old
                                            to preseed.
    """
    ver_from_snap = read_info_version(os.path.join(mount.where, CORE_LIBEXEC_DIR))
    ver_from_host = read_info_version(os.path.join(chroot_dir, CORE_LIBEXEC_DIR))
    _log_debug(
        "snapd version from runtime image: %s, from target system: %s",
        ver_from_snap,
        ver_from_host,
    )

    if ver_from_snap is None and ver_from_host is None:
        raise PreseedNotFoundError(
            f"cannot find snapd in {mount.image} or in the target system {chroot_dir}"
        )

    if ver_from_host is None or (
        ver_from_snap is not None and compare_versions(ver_from_snap, ver_from_host) >= 0
    ):
        target = TargetSnapd(dirs.snapd_binary(mount.mount_path), ver_from_snap)
    else:
        target = TargetSnapd(dirs.snapd_binary(), ver_from_host)

    if compare_versions(target.version, MIN_PRESEED_VERSION) < 0:
        raise PreseedUnsupportedVersionError(target.version, MIN_PRESEED_VERSION)

    _log_info("Selected snapd %s at %s", target.version, target.path)
    return target


class Preseeder:
    """
    Run snapd preseeding for classic root file systems.

    The chroot call and the runtime image resolver are supplied at
    construction so that callers can replace the privileged operations.
    """

    def __init__(
        self,
        dirs: Optional[PreseedDirs] = None,
        config: Optional[PreseedConfig] = None,
        chroot: Optional[Callable[[str], None]] = None,
        resolver=None,
    ):
        """
        Initialise a new ``Preseeder``.

        :param dirs: Directory layout of the target once chrooted.
        :param config: snap-preseed configuration providing the runtime
                       image mount path.
        :param chroot: Callable entering the chroot at the given path.
        :param resolver: Object providing ``system_snap_from_seed(seed_dir)``.
        """
        self.dirs = dirs or PreseedDirs()
        self.config = config or PreseedConfig()
        self.chroot = chroot or _syscall_chroot
        self.resolver = resolver or SeedSnapResolver()

    def _run_snapd(self, target: TargetSnapd):
        env = dict(os.environ)
        env[SNAPD_PRESEED_ENV] = "1"
        _log_info("Running snapd %s in preseed mode: %s", target.version, target.path)
        try:
            status = run([target.path], env=env, check=False)
        except OSError as err:
            raise PreseedRuntimeError(f"failed to preseed: {err}") from err
        if status.returncode != 0:
            raise PreseedRuntimeError(
                f"failed to preseed: exit status {status.returncode}"
            )

    def classic(self, chroot_dir: str):
        """
        Preseed the classic root file system at ``chroot_dir``.

        Validates the target, mounts the runtime image from the seed, selects
        the snapd to run, enters the chroot and runs snapd in preseed mode.
        The runtime image is unmounted on every path after a successful
        mount.

        :param chroot_dir: Path to the target root directory. Relative paths
                           are resolved against the current working
                           directory.
        :type chroot_dir: ``str``
        :raises PreseedError: On any failure.
        """
        chroot_dir = os.path.abspath(chroot_dir)
        check_chroot(chroot_dir, self.dirs)

        seed_dir = os.path.join(chroot_dir, SNAP_SEED_DIR)
        system_snap = self.resolver.system_snap_from_seed(seed_dir)
        _log_debug("System snap: %s", system_snap)

        with mount_runtime_image(
            chroot_dir, system_snap.path, self.config.mount_path
        ) as mount:
            target = choose_target_snapd(mount, chroot_dir, self.dirs)

            try:
                self.chroot(chroot_dir)
            except OSError as err:
                raise PreseedChrootError(chroot_dir, err) from err
            mount.enter_chroot(self.dirs.root)

            self._run_snapd(target)

        _log_info("Preseeding of %s complete", chroot_dir)


def classic(chroot_dir: str):
    """
    Preseed the classic root file system at ``chroot_dir`` using the system
    configuration.

    :param chroot_dir: Path to the target root directory.
    :type chroot_dir: ``str``
    """
    Preseeder(config=PreseedConfig.from_file()).classic(chroot_dir)
