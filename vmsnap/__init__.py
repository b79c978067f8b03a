# Copyright Red Hat
#
# vmsnap/__init__.py - Guest storage manager package initialisation
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Vmsnap top-level package.
"""
from ._vmsnap import *  # noqa: F401, F403
from ._vmsnap import __all__  # noqa: F401

__version__ = "0.1.0"
