"""Email gate: grammar checks against the loaded set of top-level domains.

Rules run in a fixed order and the first failing rule decides the error kind.
The TLD set is loaded from a JSON array; a missing or empty list is reported as
``tld_unavailable`` and never as an invalid address.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass


logger = logging.getLogger(__name__)

_ASCII_TLD_RE = re.compile(r"^[a-z]{2,63}$")
_PUNYCODE_TLD_RE = re.compile(r"^xn--[a-z0-9-]{1,59}$")
_LOCAL_RE = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_DOMAIN_RE = re.compile(r"^[a-z0-9.-]+$")
_WHITESPACE_RE = re.compile(r"\s", re.ASCII)

MIN_LENGTH = 6
MAX_LENGTH = 254
MAX_LABEL_LENGTH = 63

# Error kinds
EMPTY = "empty"
TOO_SHORT = "too_short"
TOO_LONG = "too_long"
NON_ASCII = "non_ascii"
WHITESPACE = "whitespace"
AT_SIGN = "at_sign"
INCOMPLETE = "incomplete"
LOCAL_DOT_EDGE = "local_dot_edge"
DOUBLE_DOT = "double_dot"
LOCAL_CHARS = "local_chars"
DOMAIN_EDGE = "domain_edge"
DOMAIN_CHARS = "domain_chars"
DOMAIN_NO_DOT = "domain_no_dot"
TLD_TOO_SHORT = "tld_too_short"
TLD_UNAVAILABLE = "tld_unavailable"
TLD_INVALID = "tld_invalid"
LABEL_INVALID = "label_invalid"

MESSAGES = {
    EMPTY: "Email must not be empty",
    TOO_SHORT: "Email is too short",
    TOO_LONG: "Email is too long",
    NON_ASCII: "Only ASCII characters are allowed",
    WHITESPACE: "Email must not contain spaces",
    AT_SIGN: "Email must contain exactly one @",
    INCOMPLETE: "Email is incomplete",
    LOCAL_DOT_EDGE: "Local part must not start or end with a dot",
    DOUBLE_DOT: "Two dots in a row are not allowed",
    LOCAL_CHARS: "Local part contains invalid characters",
    DOMAIN_EDGE: "Domain is invalid",
    DOMAIN_CHARS: "Domain contains invalid characters",
    DOMAIN_NO_DOT: "Domain must contain a dot",
    TLD_TOO_SHORT: "Top-level domain is too short",
    TLD_UNAVAILABLE: "TLD list is not loaded",
    TLD_INVALID: "Top-level domain is not valid",
    LABEL_INVALID: "Domain is invalid",
}


def is_valid_tld_token(token: str) -> bool:
    return len(token) <= MAX_LABEL_LENGTH and bool(
        _ASCII_TLD_RE.match(token) or _PUNYCODE_TLD_RE.match(token)
    )


class TldSet:
    """The currently loaded set of recognized top-level domains."""

    def __init__(self, values=None):
        self._tlds = frozenset()
        if values is not None:
            self.load_list(values)

    @property
    def loaded(self) -> bool:
        return bool(self._tlds)

    def __len__(self):
        return len(self._tlds)

    def __contains__(self, tld):
        return tld in self._tlds

    def load_list(self, values) -> int:
        if not isinstance(values, (list, tuple, set, frozenset)):
            self._tlds = frozenset()
            return 0
        cleaned = (str(v or "").strip().lower() for v in values)
        self._tlds = frozenset(t for t in cleaned if is_valid_tld_token(t))
        return len(self._tlds)

    def load_file(self, path) -> int:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                parsed = json.load(fh)
            if not isinstance(parsed, list):
                raise ValueError("TLD file is not a JSON array")
        except (OSError, ValueError) as e:
            self._tlds = frozenset()
            logger.warning("TLD list could not be loaded from %s: %s", path, e)
            return 0

        count = self.load_list(parsed)
        if count:
            logger.info("Loaded %d TLDs from %s", count, path)
        else:
            logger.warning("TLD list at %s is empty", path)
        return count


@dataclass(frozen=True)
class EmailValidation:
    ok: bool
    normalized: str
    error: str | None = None

    @property
    def message(self) -> str | None:
        return MESSAGES.get(self.error) if self.error else None


def _fail(normalized: str, kind: str) -> EmailValidation:
    return EmailValidation(ok=False, normalized=normalized, error=kind)


def validate_email(value, tlds: TldSet) -> EmailValidation:
    normalized = str(value if value is not None else "").strip().lower()

    if not normalized:
        return _fail(normalized, EMPTY)
    if len(normalized) < MIN_LENGTH:
        return _fail(normalized, TOO_SHORT)
    if len(normalized) > MAX_LENGTH:
        return _fail(normalized, TOO_LONG)
    if not normalized.isascii():
        return _fail(normalized, NON_ASCII)
    if _WHITESPACE_RE.search(normalized):
        return _fail(normalized, WHITESPACE)
    if normalized.count("@") != 1:
        return _fail(normalized, AT_SIGN)

    local, domain = normalized.split("@")
    if not local or not domain:
        return _fail(normalized, INCOMPLETE)

    if local.startswith(".") or local.endswith("."):
        return _fail(normalized, LOCAL_DOT_EDGE)
    if ".." in local:
        return _fail(normalized, DOUBLE_DOT)
    if not _LOCAL_RE.match(local):
        return _fail(normalized, LOCAL_CHARS)

    if domain[0] in "-." or domain[-1] in "-.":
        return _fail(normalized, DOMAIN_EDGE)
    if ".." in domain:
        return _fail(normalized, DOUBLE_DOT)
    if not _DOMAIN_RE.match(domain):
        return _fail(normalized, DOMAIN_CHARS)
    if "." not in domain:
        return _fail(normalized, DOMAIN_NO_DOT)

    labels = domain.split(".")
    tld = labels[-1]
    if len(tld) < 2:
        return _fail(normalized, TLD_TOO_SHORT)
    if not tlds.loaded:
        return _fail(normalized, TLD_UNAVAILABLE)
    if tld not in tlds:
        return _fail(normalized, TLD_INVALID)

    for label in labels:
        if not label or len(label) > MAX_LABEL_LENGTH or label.startswith("-") or label.endswith("-"):
            return _fail(normalized, LABEL_INVALID)

    return EmailValidation(ok=True, normalized=normalized)


def normalize_email(value) -> str:
    return str(value or "").strip().lower()
