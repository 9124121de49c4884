"""Client for the claim endpoint.

Each attempt gets a sequence number; a response that arrives after a newer
attempt (or a ``cancel``) is returned marked ``stale`` and must be ignored.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError


CLAIM_PATH = "/api/claim-spin"
CLAIM_TIMEOUT = 8
REDISPLAY_SECONDS = 2.0

UNLOCKED_MESSAGE = "OK - 1 spin unlocked"
FALLBACK_MESSAGE = "Could not check the email."
UNREACHABLE_MESSAGE = "Server unreachable."


@dataclass(frozen=True)
class ClaimResponse:
    ok: bool
    status: int | None
    message: str
    stale: bool = False
    busy: bool = False
    network_error: bool = False


def _message_from(body: bytes) -> str:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return FALLBACK_MESSAGE
    msg = payload.get("message") if isinstance(payload, dict) else None
    if isinstance(msg, str) and msg.strip():
        return msg.strip()
    return FALLBACK_MESSAGE


class SpinClient:
    def __init__(self, base_url: str = "", timeout: float = CLAIM_TIMEOUT, clock=time.monotonic):
        self.endpoint = base_url.rstrip("/") + CLAIM_PATH
        self.timeout = timeout
        self.clock = clock
        self._seq = 0
        self._in_flight = False
        self._guard = threading.Lock()
        self._last_ok = None  # (email, clock value)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def cancel(self):
        """Invalidate the in-flight attempt; its response will come back stale."""
        with self._guard:
            self._seq += 1
            self._in_flight = False

    def _post(self, email: str):
        body = json.dumps({"email": email}).encode("utf-8")
        req = urlrequest.Request(
            self.endpoint, data=body, headers={"Content-Type": "application/json"}, method="POST"
        )
        try:
            with urlrequest.urlopen(req, timeout=self.timeout) as resp:
                return resp.status, resp.read()
        except HTTPError as e:
            return e.code, e.read()

    def claim(self, email: str, replace: bool = False) -> ClaimResponse:
        with self._guard:
            if self._in_flight and not replace:
                return ClaimResponse(False, None, "Already checking...", busy=True)
            self._seq += 1
            seq = self._seq
            self._in_flight = True

        try:
            status, body = self._post(email)
        except (URLError, TimeoutError, OSError):
            if self._is_stale(seq):
                return ClaimResponse(False, None, "", stale=True)
            return ClaimResponse(False, None, UNREACHABLE_MESSAGE, network_error=True)
        finally:
            with self._guard:
                if seq == self._seq:
                    self._in_flight = False

        if self._is_stale(seq):
            return ClaimResponse(False, status, "", stale=True)

        if 200 <= status < 300:
            self._last_ok = (email, self.clock())
            return ClaimResponse(True, status, UNLOCKED_MESSAGE)

        if status == 409 and self._recent_success(email):
            # Duplicate answer to a request that already succeeded.
            return ClaimResponse(True, status, UNLOCKED_MESSAGE)

        return ClaimResponse(False, status, _message_from(body))

    def _is_stale(self, seq) -> bool:
        with self._guard:
            return seq != self._seq

    def _recent_success(self, email) -> bool:
        if not self._last_ok:
            return False
        last_email, at = self._last_ok
        return last_email == email and self.clock() - at < REDISPLAY_SECONDS
