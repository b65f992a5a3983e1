# ProxyStation
# Copyright (C) 2025 ProxyStation contributors
#
# This file is part of ProxyStation.
#
# ProxyStation is free software: you can redistribute it and/or modify it
# under the terms of the GNU Affero General Public License v3.0 (AGPL-3.0)
# as published by the Free Software Foundation.
#
# ProxyStation is distributed WITHOUT ANY WARRANTY. See the GNU Affero
# General Public License for more details.
"""Single source of truth for the package version."""

__version__ = "1.0.0"
