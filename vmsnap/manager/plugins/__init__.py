# Copyright Red Hat
#
# vmsnap/manager/plugins/__init__.py - Guest storage backend plugins
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Guest storage backend plugin interface.
"""
from ._plugin import *  # noqa: F401, F403
from ._plugin import __all__  # noqa: F401
