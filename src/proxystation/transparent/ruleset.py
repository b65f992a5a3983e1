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
"""nftables ruleset generation for transparent proxying.

``build_ruleset`` is a pure function of ``(mode, scope, port)``: no I/O, no
clock, no environment lookups. The same arguments always produce the same
bytes, which is what makes the preview endpoint trustworthy.

Rule order inside each chain is significant. The exemptions (IPSec, reserved
destinations, already-marked packets) must come before the interception
action or the proxy engine's own traffic would loop back into itself.
"""

from __future__ import annotations

from .config import Mode, Scope

TABLE_FAMILY = "inet"
TABLE_NAME = "proxystation"
TABLE_REF = f"{TABLE_FAMILY} {TABLE_NAME}"

# fwmark set on intercepted packets; policy routing keys on it
PROXY_MARK = 1
# fwmark the proxy engine sets on its own inbound/server traffic
SERVER_MARK = 255

LOCAL_NETS_V4: tuple[str, ...] = (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "224.0.0.0/4",
    "240.0.0.0/4",
)

LOCAL_NETS_V6: tuple[str, ...] = (
    "::1/128",
    "fc00::/7",
    "fe80::/10",
    "ff00::/8",
)

# IKE, NAT-T and L2TP
VPN_UDP_PORTS: tuple[int, ...] = (500, 4500, 1701)

_INDENT = "    "


def _set_block(name: str, addr_type: str, elements: tuple[str, ...]) -> list[str]:
    lines = [
        f"set {name} {{",
        f"{_INDENT}type {addr_type}",
        f"{_INDENT}flags interval",
        f"{_INDENT}elements = {{",
    ]
    for index, element in enumerate(elements):
        sep = "," if index < len(elements) - 1 else ""
        lines.append(f"{_INDENT * 2}{element}{sep}")
    lines.append(f"{_INDENT}}}")
    lines.append("}")
    return lines


def _exemption_rules() -> list[str]:
    ports = ", ".join(str(p) for p in VPN_UDP_PORTS)
    return [
        "# IPSec / L2TP traffic is never proxied",
        f"udp dport {{ {ports} }} return",
        "meta l4proto esp return",
    ]


def _reserved_destination_rules() -> list[str]:
    return [
        "# Reserved and private destinations are never proxied",
        "ip daddr @local_nets return",
        "ip6 daddr @local_nets6 return",
    ]


def _prerouting_chain(mode: Mode, port: int) -> list[str]:
    # redirect statements are only accepted in nat chains
    if mode is Mode.TPROXY:
        hook = "type filter hook prerouting priority mangle; policy accept;"
    else:
        hook = "type nat hook prerouting priority dstnat; policy accept;"
    rules = [hook, "", *_exemption_rules()]
    if mode is Mode.TPROXY:
        rules += [
            "",
            "# Packets of an established transparent socket only need the mark",
            f"meta l4proto {{ tcp, udp }} socket transparent 1 meta mark set {PROXY_MARK} accept",
        ]
    rules += ["", *_reserved_destination_rules(), ""]
    if mode is Mode.TPROXY:
        rules += [
            "# TCP and UDP are handed to the TPROXY listener",
            f"meta l4proto {{ tcp, udp }} tproxy to :{port} meta mark set {PROXY_MARK} accept",
        ]
    else:
        rules += [
            "# REDIRECT cannot carry UDP, so only TCP is intercepted",
            f"meta l4proto tcp redirect to :{port}",
        ]
    return _chain("prerouting", rules)


def _divert_chain(port: int) -> list[str]:
    """Catch host traffic marked by the output chain as it re-enters via lo.

    Only used for ``tproxy`` with ``scope=local``: there is no prerouting
    chain then, yet TPROXY can only act on the prerouting hook.
    """
    rules = [
        "type filter hook prerouting priority mangle; policy accept;",
        "",
        'iifname != "lo" return',
        f"meta mark != {PROXY_MARK} return",
        "",
        "# Looped-back host traffic is handed to the TPROXY listener",
        f"meta l4proto {{ tcp, udp }} tproxy to :{port} meta mark set {PROXY_MARK} accept",
    ]
    return _chain("divert", rules)


def _output_chain(mode: Mode, port: int) -> list[str]:
    if mode is Mode.TPROXY:
        hook = "type route hook output priority mangle; policy accept;"
    else:
        hook = "type nat hook output priority -100; policy accept;"
    rules = [
        hook,
        "",
        *_exemption_rules(),
        "",
        *_reserved_destination_rules(),
        "",
        "# Already marked: the packet is re-entering the stack",
        f"meta mark {PROXY_MARK} return",
        "",
        "# The proxy engine's own inbound/server traffic",
        f"meta mark {SERVER_MARK} return",
        "",
    ]
    if mode is Mode.TPROXY:
        rules += [
            "# Mark outbound TCP/UDP so policy routing loops it back to prerouting",
            f"meta l4proto {{ tcp, udp }} meta mark set {PROXY_MARK}",
        ]
    else:
        rules += [
            "# Outbound TCP is rewritten to the local REDIRECT listener",
            f"meta l4proto tcp redirect to :{port}",
        ]
    return _chain("output", rules)


def _chain(name: str, rules: list[str]) -> list[str]:
    lines = [f"chain {name} {{"]
    lines += [f"{_INDENT}{rule}" if rule else "" for rule in rules]
    lines.append("}")
    return lines


def build_ruleset(mode: Mode | str, scope: Scope | str, port: int) -> str:
    """Render the nftables script for ``(mode, scope, port)``.

    ``mode=off`` renders the table with its address sets and no chains;
    loading it intercepts nothing. The prerouting chain is present only for
    ``scope=router``; the output chain is present whenever ``mode != off``.
    ``tproxy`` with ``scope=local`` gets a ``divert`` chain instead, which
    only sees marked packets arriving on the loopback interface.

    For ``tproxy`` + ``local`` the output chain only marks packets; the
    ``tproxy to :PORT`` action itself sits in ``divert``, because nft only
    accepts ``tproxy`` on the prerouting hook. Expect to find it there, not
    in ``output``, when reading a preview.

    Raises:
        ValueError: *mode* or *scope* is not a known value.
    """
    mode = Mode(mode)
    scope = Scope(scope)

    body: list[str] = []
    body += _set_block("local_nets", "ipv4_addr", LOCAL_NETS_V4)
    body.append("")
    body += _set_block("local_nets6", "ipv6_addr", LOCAL_NETS_V6)

    if mode is not Mode.OFF:
        if scope is Scope.ROUTER:
            body.append("")
            body += _prerouting_chain(mode, port)
        elif mode is Mode.TPROXY:
            body.append("")
            body += _divert_chain(port)
        body.append("")
        body += _output_chain(mode, port)

    lines = [f"table {TABLE_REF} {{"]
    lines += [f"{_INDENT}{line}" if line else "" for line in body]
    lines.append("}")
    return "\n".join(lines) + "\n"
