# Copyright Red Hat
#
# vmsnap/manager/__init__.py - Guest storage manager
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the guest storage manager.
"""

from ._manager import Manager, VmsnapConfig  # noqa: F401, F403
from ._guests import GuestState, MacGenerator
from ._pipeline import COMPRESSION_TYPES

__all__ = [
    "Manager",
    "VmsnapConfig",
    "GuestState",
    "MacGenerator",
    "COMPRESSION_TYPES",
]
