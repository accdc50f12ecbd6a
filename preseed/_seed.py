# Copyright Red Hat
#
# preseed/_seed.py - Snap preseed classic seed support
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Locate the snap providing snapd in the classic seed of a target system.
"""
from typing import NamedTuple
import logging
import os.path

import yaml

from ._preseed import PRESEED_SUBSYSTEM_SEED, PreseedSeedError

_log = logging.getLogger(__name__)

_log_info = _log.info


def _log_debug_seed(msg, *args, **kwargs):
    """A wrapper for seed subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": PRESEED_SUBSYSTEM_SEED}, **kwargs)


#: Name of the classic seed description file.
SEED_YAML = "seed.yaml"

#: Snaps that can provide snapd, in order of preference.
_SYSTEM_SNAPS = ("snapd", "core")


class SystemSnap(NamedTuple):
    """
    The seeded snap providing snapd.
    """

    #: Path to the snap image.
    path: str
    #: Seed system label (always empty for classic seeds).
    label: str
    #: Name of the snap.
    name: str


class SeedSnapResolver:
    """
    Runtime image resolver for classic ``seed.yaml`` seeds.
    """

    def system_snap_from_seed(self, seed_dir: str) -> SystemSnap:
        """
        Return the snap in ``seed_dir`` that provides snapd. The ``snapd``
        snap is preferred; ``core`` is used for older seeds.

        :param seed_dir: Path to the seed directory of the target system.
        :type seed_dir: ``str``
        :returns: The seeded system snap.
        :rtype: ``SystemSnap``
        :raises PreseedSeedError: The seed cannot be read or does not
                                  contain a system snap.
        """
        seed_yaml = os.path.join(seed_dir, SEED_YAML)
        _log_debug_seed("Reading seed from %s", seed_yaml)
        try:
            with open(seed_yaml, "r", encoding="utf8") as fp:
                seed = yaml.safe_load(fp)
        except OSError as err:
            raise PreseedSeedError(f"cannot read seed {seed_yaml}: {err}") from err
        except yaml.YAMLError as err:
            raise PreseedSeedError(f"cannot parse seed {seed_yaml}: {err}") from err

        if not isinstance(seed, dict) or not isinstance(seed.get("snaps"), list):
            raise PreseedSeedError(f"cannot find a list of snaps in {seed_yaml}")

        files = {}
        for entry in seed["snaps"]:
            if not isinstance(entry, dict) or "name" not in entry:
                raise PreseedSeedError(f"malformed snap entry in {seed_yaml}: {entry}")
            if "file" not in entry:
                raise PreseedSeedError(
                    f"snap {entry['name']} in {seed_yaml} has no file"
                )
            files[entry["name"]] = entry["file"]

        for name in _SYSTEM_SNAPS:
            if name in files:
                path = os.path.join(seed_dir, "snaps", files[name])
                _log_info("Using %s snap from seed: %s", name, path)
                return SystemSnap(path=path, label="", name=name)

        raise PreseedSeedError(
            f"cannot find {' or '.join(_SYSTEM_SNAPS)} snap in seed {seed_yaml}"
        )
