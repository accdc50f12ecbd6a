# Copyright Red Hat
#
# preseed/__init__.py - Snap preseed package initialisation
#
# This file is part of the snap-preseed project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snap preseed top-level package.
"""
from ._preseed import *  # noqa: F401, F403
from ._preseed import __all__ as _preseed_all
from ._classic import Preseeder, TargetSnapd, choose_target_snapd, classic
from ._reset import ARTIFACT_CATALOG, ArtifactEntry, ArtifactKind, reset_preseeded_chroot
from ._seed import SeedSnapResolver, SystemSnap
from .dirs import PreseedConfig, PreseedDirs

__version__ = "0.1.0"

__all__ = _preseed_all + [
    "Preseeder",
    "TargetSnapd",
    "choose_target_snapd",
    "classic",
    "ARTIFACT_CATALOG",
    "ArtifactEntry",
    "ArtifactKind",
    "reset_preseeded_chroot",
    "SeedSnapResolver",
    "SystemSnap",
    "PreseedConfig",
    "PreseedDirs",
]
