"""Validators - format checks for request fields.

All functions are pure and total: any input, including non-strings, yields a
:class:`Verdict` instead of raising.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Any

# Patterns are applied with fullmatch so a trailing newline cannot slip through.
USERNAME_RE = re.compile(r"[a-zA-Z0-9_-]{3,20}")
DOMAIN_LABEL_RE = re.compile(r"[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")
RR_RE = re.compile(r"@|[a-zA-Z0-9*]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")
DOTTED_QUAD_RE = re.compile(r"[0-9]{1,3}(\.[0-9]{1,3}){3}")


@dataclass(frozen=True)
class Verdict:
    """Outcome of a validation; ``reason`` is empty when ``ok`` is True."""

    ok: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.ok


PASS = Verdict(True)


def _fail(reason: str) -> Verdict:
    return Verdict(False, reason)


def validate_username(username: Any) -> Verdict:
    if not isinstance(username, str) or not USERNAME_RE.fullmatch(username):
        return _fail(
            f"invalid username '{username}': use 3-20 letters, digits, '_' or '-'"
        )
    return PASS


def validate_domain_name(domain_name: Any) -> Verdict:
    if not isinstance(domain_name, str):
        return _fail("domain name must be a string")

    labels = domain_name.split(".")
    if len(labels) < 2:
        return _fail(f"invalid domain name '{domain_name}': at least one dot is required")

    for label in labels:
        if not DOMAIN_LABEL_RE.fullmatch(label):
            return _fail(f"invalid domain label '{label}' in '{domain_name}'")
    return PASS


def validate_rr(rr: Any) -> Verdict:
    if not isinstance(rr, str) or not RR_RE.fullmatch(rr):
        return _fail(f"invalid host record (rr) '{rr}'")
    return PASS


def validate_ipv4(ip: Any) -> Verdict:
    if not isinstance(ip, str) or not DOTTED_QUAD_RE.fullmatch(ip):
        return _fail(f"'{ip}' is not a valid IPv4 address")
    try:
        ipaddress.IPv4Address(ip)
    except ipaddress.AddressValueError:
        return _fail(f"'{ip}' is not a valid IPv4 address")
    return PASS
