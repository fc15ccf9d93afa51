"""
Wall-clock helpers.

Components take a ``clock`` callable (``time.time`` by default) so tests can
pin timestamps.  Formatting matches JavaScript's ``Date.toISOString()``
(millisecond precision, ``Z`` suffix) so bundles stay byte-compatible with
backups written by the browser wallet.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]

system_clock: Clock = time.time


def iso_timestamp(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def epoch_ms(ts: float) -> int:
    return int(ts * 1000)
