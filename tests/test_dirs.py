# Copyright Red Hat
#
# tests/test_dirs.py - Directory layout and configuration tests
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging
import tempfile
import os

import preseed
from preseed import PreseedConfig, PreseedDirs
from preseed.dirs import DEFAULT_MOUNT_PATH

log = logging.getLogger()


class PreseedDirsTests(unittest.TestCase):
    def test_default_root(self):
        dirs = PreseedDirs()
        self.assertEqual(dirs.root, "/")
        self.assertEqual(dirs.mounts_file, "/proc/self/mounts")
        self.assertEqual(dirs.path("var/lib/snapd"), "/var/lib/snapd")

    def test_path_strips_leading_slash(self):
        dirs = PreseedDirs(root="/srv/root")
        self.assertEqual(
            dirs.path("/tmp/snapd-preseed", "usr/lib/snapd"),
            "/srv/root/tmp/snapd-preseed/usr/lib/snapd",
        )

    def test_snapd_binary(self):
        dirs = PreseedDirs()
        self.assertEqual(dirs.snapd_binary(), "/usr/lib/snapd/snapd")
        self.assertEqual(
            dirs.snapd_binary("/tmp/snapd-preseed"),
            "/tmp/snapd-preseed/usr/lib/snapd/snapd",
        )


class PreseedConfigTests(unittest.TestCase):
    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tempdir = tempfile.TemporaryDirectory(suffix="_test_config")
        self.addCleanup(self._tempdir.cleanup)
        self.config_file = os.path.join(self._tempdir.name, "snap-preseed.conf")

    def _write_config(self, content):
        with open(self.config_file, "w", encoding="utf8") as fp:
            fp.write(content)

    def test_missing_file(self):
        config = PreseedConfig.from_file(self.config_file)
        self.assertEqual(config.mount_path, DEFAULT_MOUNT_PATH)

    def test_mount_path(self):
        self._write_config("[Global]\nMountPath = /run/preseed-mnt\n")
        config = PreseedConfig.from_file(self.config_file)
        self.assertEqual(config.mount_path, "/run/preseed-mnt")

    def test_no_mount_path(self):
        self._write_config("[Global]\n")
        config = PreseedConfig.from_file(self.config_file)
        self.assertEqual(config.mount_path, DEFAULT_MOUNT_PATH)

    def test_relative_mount_path_ignored(self):
        self._write_config("[Global]\nMountPath = tmp/mnt\n")
        with self.assertLogs("preseed", level="WARNING"):
            config = PreseedConfig.from_file(self.config_file)
        self.assertEqual(config.mount_path, DEFAULT_MOUNT_PATH)

    def test_malformed_file(self):
        self._write_config("MountPath = /run/preseed-mnt\n")
        with self.assertRaisesRegex(preseed.PreseedError, "cannot parse configuration"):
            PreseedConfig.from_file(self.config_file)
