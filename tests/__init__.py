# Copyright Red Hat
#
# tests/__init__.py - Snap preseed test package
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import os

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)


class MockArgs(object):
    chroot = None
    debug = None
    reset = False
    verbose = 0
    version = False


def have_root():
    """Return ``True`` if the test suite is running as the root user,
    and ``False`` otherwise.
    """
    return os.geteuid() == 0 and os.getegid() == 0
