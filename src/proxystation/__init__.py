"""
ProxyStation -- transparent proxy control for a local proxy engine.

Turns a transparent mode (off / tproxy / redirect) and a scope
(local / router) into nftables rules and policy routing, and exposes the
switch over a small REST API and a CLI.
"""

from proxystation._version import __version__

__author__ = "ProxyStation contributors"
