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
"""Transparent proxy rule control.

Components, leaves first:
  - config      persisted (mode, scope) and listen ports
  - ruleset     pure nftables script builder
  - firewall    loads/clears the private ``inet proxystation`` table
  - routing     fwmark policy routes needed by TPROXY
  - system      platform gate and forwarding sysctls
  - controller  orchestrates a mode change under one lock

Security properties:
  - Only the private table and the fwmark 1 / table 100 pair are touched
  - mode=off leaves no table and no policy routes behind
  - Marked (1) and server (255) traffic is never re-intercepted
"""
