#!/usr/bin/env python3
"""Refresh tlds.json from the IANA root zone list.

Run from a scheduler (or by hand) before deploying; the claim endpoint refuses
every claim while the list is missing or empty.
"""

import json
import os
import sys
from urllib import request as urlrequest

from email_rules import is_valid_tld_token

IANA_TLDS_URL = "https://data.iana.org/TLD/tlds-alpha-by-domain.txt"
DEFAULT_OUT = os.getenv("TLDS_PATH") or "tlds.json"


def fetch_tlds(url=IANA_TLDS_URL, timeout=20) -> list:
    req = urlrequest.Request(url, headers={"User-Agent": "spin-the-wheel-tld-updater/1.2"})
    with urlrequest.urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode("utf-8")
    return parse_tlds(body)


def parse_tlds(body: str) -> list:
    tlds = (line.strip().lower() for line in body.splitlines())
    return sorted({t for t in tlds if t and not t.startswith("#") and is_valid_tld_token(t)})


def main(out_path=DEFAULT_OUT):
    tlds = fetch_tlds()
    if not tlds:
        raise SystemExit("IANA list was empty; keeping the existing file")
    with open(out_path, "w", encoding="utf-8") as fh:
        json.dump(tlds, fh, indent=2)
        fh.write("\n")
    print(f"Wrote {len(tlds)} TLDs to {out_path}")


if __name__ == "__main__":
    main(*sys.argv[1:2])
