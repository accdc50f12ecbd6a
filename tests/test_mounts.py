# Copyright Red Hat
#
# tests/test_mounts.py - Mount support tests
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
from subprocess import CalledProcessError
import unittest
import unittest.mock
import logging
import tempfile
import os.path
import os

import preseed
import preseed._mounts as mounts
from preseed.dirs import PreseedDirs

from ._util import make_chroot_dirs, write_mounts_file

log = logging.getLogger()

_MOUNT_CMD = ["mount", "-t", "squashfs", "-o", "ro,x-gdu.hide,x-gvfs-hide"]


class ProcMountsReaderTests(unittest.TestCase):
    """
    Test the /proc/self/mounts reader.
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tempdir = tempfile.TemporaryDirectory(suffix="_test_mounts")
        self.addCleanup(self._tempdir.cleanup)
        self.mounts_file = os.path.join(self._tempdir.name, "mounts")

    def test__unescape_mounts(self):
        self.assertEqual(
            mounts._unescape_mounts("/mnt/with\\040space\\011tab\\134slash"),
            "/mnt/with space\ttab\\slash",
        )

    def test_mount_points(self):
        write_mounts_file(self.mounts_file, ["/srv/root/dev", "/srv/my root/proc/"])
        pmr = mounts.ProcMountsReader(self.mounts_file)
        self.assertEqual(
            pmr.mount_points(), ["/", "/srv/root/dev", "/srv/my root/proc"]
        )

    def test_malformed_lines_skipped(self):
        with open(self.mounts_file, "w", encoding="utf8") as fp:
            fp.write("proc /proc proc rw 0 0\n\nbogus line\n")
        pmr = mounts.ProcMountsReader(self.mounts_file)
        entries = list(pmr.entries())
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].fstype, "proc")


class CheckChrootTests(unittest.TestCase):
    """
    Test chroot validation.
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tempdir = tempfile.TemporaryDirectory(suffix="_test_chroot")
        self.addCleanup(self._tempdir.cleanup)
        self.chroot_dir = os.path.join(self._tempdir.name, "chroot")
        os.makedirs(self.chroot_dir)
        self.mounts_file = os.path.join(self._tempdir.name, "mounts")
        self.dirs = PreseedDirs(root=self.chroot_dir, mounts_file=self.mounts_file)

    def test_check_chroot_ok(self):
        make_chroot_dirs(self.chroot_dir, self.mounts_file)
        mounts.check_chroot(self.chroot_dir, self.dirs)

    def test_check_chroot_not_a_directory(self):
        with self.assertRaises(preseed.PreseedNotADirectoryError) as cm:
            mounts.check_chroot("/non-existing-dir", self.dirs)
        self.assertEqual(
            str(cm.exception), 'cannot verify "/non-existing-dir": is not a directory'
        )

    def test_check_chroot_regular_file(self):
        path = os.path.join(self._tempdir.name, "file")
        with open(path, "w", encoding="utf8"):
            pass
        with self.assertRaises(preseed.PreseedNotADirectoryError):
            mounts.check_chroot(path, self.dirs)

    def test_check_chroot_no_mountpoints(self):
        write_mounts_file(self.mounts_file, [])
        with self.assertRaises(preseed.PreseedMissingMountpointsError) as cm:
            mounts.check_chroot(self.chroot_dir, self.dirs)
        self.assertEqual(
            str(cm.exception),
            "cannot preseed without the following mountpoints:\n"
            f" - {self.chroot_dir}/dev\n"
            f" - {self.chroot_dir}/proc\n"
            f" - {self.chroot_dir}/sys/kernel/security\n",
        )

    def test_check_chroot_lists_every_missing_mountpoint(self):
        make_chroot_dirs(self.chroot_dir, self.mounts_file, mounted=("proc",))
        with self.assertRaises(preseed.PreseedMissingMountpointsError) as cm:
            mounts.check_chroot(self.chroot_dir, self.dirs)
        self.assertEqual(
            cm.exception.missing,
            [
                os.path.join(self.chroot_dir, "dev"),
                os.path.join(self.chroot_dir, "sys/kernel/security"),
            ],
        )

    def test_check_chroot_host_mounts_do_not_count(self):
        write_mounts_file(self.mounts_file, ["/dev", "/proc", "/sys/kernel/security"])
        with self.assertRaises(preseed.PreseedMissingMountpointsError) as cm:
            mounts.check_chroot(self.chroot_dir, self.dirs)
        self.assertEqual(len(cm.exception.missing), 3)

    def test_check_chroot_no_apparmor(self):
        make_chroot_dirs(self.chroot_dir, self.mounts_file, apparmor=False)
        with self.assertRaises(preseed.PreseedMissingApparmorError) as cm:
            mounts.check_chroot(self.chroot_dir, self.dirs)
        self.assertEqual(
            str(cm.exception),
            "cannot preseed without access to "
            f'"{self.chroot_dir}/sys/kernel/security/apparmor"',
        )

    def test_check_chroot_already_preseeded(self):
        state_dir = os.path.join(self.chroot_dir, "var/lib/snapd")
        os.makedirs(state_dir)
        with open(os.path.join(state_dir, "state.json"), "w", encoding="utf8"):
            pass
        with self.assertRaises(preseed.PreseedAlreadyPreseededError) as cm:
            mounts.check_chroot(self.chroot_dir, self.dirs)
        self.assertEqual(
            str(cm.exception),
            f'the system at "{self.chroot_dir}" appears to be preseeded, '
            "pass --reset flag to clean it up",
        )

    def test_check_chroot_unreadable_mount_table(self):
        with self.assertRaisesRegex(preseed.PreseedError, "cannot read mount table"):
            mounts.check_chroot(self.chroot_dir, self.dirs)


class MountHelperTests(unittest.TestCase):
    """
    Test mount helpers with mock callouts.
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tempdir = tempfile.TemporaryDirectory(suffix="_test_mount")
        self.addCleanup(self._tempdir.cleanup)
        self.root = self._tempdir.name
        self.where = os.path.join(self.root, "tmp/snapd-preseed")

    @unittest.mock.patch("preseed._mounts.run")
    def test__mount(self, mock_run):
        mounts._mount("/a/core.snap", "/mnt/x")
        mock_run.assert_called_once()
        self.assertEqual(
            mock_run.call_args.args[0], _MOUNT_CMD + ["/a/core.snap", "/mnt/x"]
        )

    @unittest.mock.patch("preseed._mounts.run")
    def test__mount_failure(self, mock_run):
        mock_run.side_effect = CalledProcessError(
            32, "mount", output="something went wrong\n"
        )
        with self.assertRaises(preseed.PreseedMountError) as cm:
            mounts._mount("/a/core.snap", "/mnt/x")
        self.assertEqual(
            str(cm.exception),
            "cannot mount /a/core.snap at /mnt/x in preseed mode: exit status 32\n"
            "'mount -t squashfs -o ro,x-gdu.hide,x-gvfs-hide /a/core.snap /mnt/x' "
            "failed with: something went wrong\n",
        )

    def _slow_helper(self, name):
        bin_dir = os.path.join(self.root, "bin")
        os.makedirs(bin_dir, exist_ok=True)
        helper = os.path.join(bin_dir, name)
        with open(helper, "w", encoding="utf8") as fp:
            fp.write(f'#!/bin/sh\nsleep 2\necho "$@" > "{helper}.args"\nexit 0\n')
        os.chmod(helper, 0o755)
        return bin_dir, helper + ".args"

    def test__mount_slow_helper_completes(self):
        bin_dir, args_file = self._slow_helper("mount")
        path = bin_dir + os.pathsep + os.environ.get("PATH", "")
        with unittest.mock.patch.dict(os.environ, {"PATH": path}):
            mounts._mount("/a/core.snap", "/mnt/x")
        with open(args_file, "r", encoding="utf8") as fp:
            self.assertEqual(
                fp.read().strip(),
                "-t squashfs -o ro,x-gdu.hide,x-gvfs-hide /a/core.snap /mnt/x",
            )

    def test__umount_slow_helper_completes(self):
        bin_dir, args_file = self._slow_helper("umount")
        path = bin_dir + os.pathsep + os.environ.get("PATH", "")
        with unittest.mock.patch.dict(os.environ, {"PATH": path}):
            mounts._umount("/mnt/x")
        with open(args_file, "r", encoding="utf8") as fp:
            self.assertEqual(fp.read().strip(), "/mnt/x")

    @unittest.mock.patch("preseed._mounts.run")
    def test__mount_helpers_run_to_completion(self, mock_run):
        mounts._mount("/a/core.snap", "/mnt/x")
        mounts._umount("/mnt/x")
        for call in mock_run.call_args_list:
            self.assertNotIn("timeout", call.kwargs)

    @unittest.mock.patch("preseed._mounts.run")
    def test__mount_not_found(self, mock_run):
        mock_run.side_effect = FileNotFoundError(2, "No such file", "mount")
        with self.assertRaises(preseed.PreseedCalloutError):
            mounts._mount("/a/core.snap", "/mnt/x")

    @unittest.mock.patch("preseed._mounts.run")
    def test__umount_failure(self, mock_run):
        mock_run.side_effect = CalledProcessError(1, "umount", stderr="busy")
        with self.assertRaises(preseed.PreseedUmountError) as cm:
            mounts._umount("/mnt/x")
        self.assertEqual(cm.exception.status, 1)

    @unittest.mock.patch("preseed._mounts.run")
    def test_mount_runtime_image(self, mock_run):
        with mounts.mount_runtime_image(self.root, "/a/core.snap", "/tmp/snapd-preseed") as mnt:
            self.assertTrue(mnt.mounted)
            self.assertEqual(mnt.where, self.where)
            self.assertTrue(os.path.isdir(self.where))
        self.assertFalse(mnt.mounted)
        self.assertEqual(
            [call.args[0] for call in mock_run.call_args_list],
            [_MOUNT_CMD + ["/a/core.snap", self.where], ["umount", self.where]],
        )
        # The mount point created for the run is removed again.
        self.assertFalse(os.path.exists(self.where))

    @unittest.mock.patch("preseed._mounts.run")
    def test_mount_runtime_image_unmounts_on_error(self, mock_run):
        with self.assertRaises(ValueError):
            with mounts.mount_runtime_image(self.root, "/a/core.snap", "/tmp/snapd-preseed"):
                raise ValueError("boom")
        self.assertEqual(mock_run.call_args_list[-1].args[0], ["umount", self.where])

    @unittest.mock.patch("preseed._mounts.run")
    def test_mount_runtime_image_mount_failure(self, mock_run):
        mock_run.side_effect = CalledProcessError(32, "mount", output="bad\n")
        with self.assertRaises(preseed.PreseedMountError):
            with mounts.mount_runtime_image(self.root, "/a/core.snap", "/tmp/snapd-preseed"):
                self.fail("context body must not run")
        mock_run.assert_called_once()
        self.assertFalse(os.path.exists(self.where))

    @unittest.mock.patch("preseed._mounts.run")
    def test_umount_failure_is_logged(self, mock_run):
        def _run(cmd, **_kwargs):
            if cmd[0] == "umount":
                raise CalledProcessError(1, cmd, stderr="target is busy")
            return unittest.mock.Mock(returncode=0)

        mock_run.side_effect = _run
        with self.assertLogs("preseed", level="ERROR") as cm:
            with mounts.mount_runtime_image(self.root, "/a/core.snap", "/tmp/snapd-preseed") as mnt:
                pass
        self.assertTrue(mnt.mounted)
        self.assertIn("target is busy", "\n".join(cm.output))

    def test_enter_chroot(self):
        mnt = mounts.RuntimeImageMount("/a/core.snap", self.root, "/tmp/snapd-preseed")
        self.assertEqual(mnt.where, self.where)
        mnt.enter_chroot("/")
        self.assertEqual(mnt.where, "/tmp/snapd-preseed")

    def test_existing_mount_point_is_kept(self):
        os.makedirs(self.where)
        with unittest.mock.patch("preseed._mounts.run"):
            with mounts.mount_runtime_image(self.root, "/a/core.snap", "/tmp/snapd-preseed"):
                pass
        self.assertTrue(os.path.isdir(self.where))

    @unittest.mock.patch("preseed._mounts.magic.detect_from_filename")
    def test__check_image_not_squashfs(self, mock_detect):
        image = os.path.join(self.root, "core.snap")
        with open(image, "w", encoding="utf8") as fp:
            fp.write("not a snap\n")
        mock_detect.return_value = unittest.mock.Mock(name="ASCII text")
        mock_detect.return_value.name = "ASCII text"
        with self.assertLogs("preseed", level="WARNING") as cm:
            mounts._check_image(image)
        self.assertIn("does not look like a snap", "\n".join(cm.output))

    @unittest.mock.patch("preseed._mounts.magic.detect_from_filename")
    def test__check_image_squashfs(self, mock_detect):
        image = os.path.join(self.root, "core.snap")
        with open(image, "wb") as fp:
            fp.write(b"hsqs")
        mock_detect.return_value = unittest.mock.Mock()
        mock_detect.return_value.name = "Squashfs filesystem, little endian, version 4.0"
        mounts._check_image(image)
        mock_detect.assert_called_once_with(image)

    @unittest.mock.patch("preseed._mounts.magic.detect_from_filename")
    def test__check_image_missing(self, mock_detect):
        mounts._check_image("/a/core.snap")
        mock_detect.assert_not_called()
