from __future__ import annotations

import random
import re
from datetime import datetime
from uuid import uuid4

from supportdesk.kernel.time import utc_now


_PREFIX_RE = re.compile(r"^[a-z][a-z0-9]{1,24}$")
TICKET_NUMBER_RE = re.compile(r"^TK-\d{8}-\d{3}$")


def new_prefixed_id(prefix: str) -> str:
    """Generate a new ID using a short prefix.

    Format: `{prefix}_{uuidhex}`.
    """
    if not _PREFIX_RE.fullmatch(prefix):
        raise ValueError(
            "Invalid id prefix. Expected lowercase letters/digits, 2-25 chars, "
            "starting with a letter."
        )
    return f"{prefix}_{uuid4().hex}"


def new_ticket_number(now: datetime | None = None, *, rng: random.Random | None = None) -> str:
    """Build a human-readable ticket number candidate.

    Format: `TK-<last 8 digits of epoch millis>-<3 random digits>`. This is a
    candidate only: uniqueness is enforced by the store and callers retry on
    conflict.
    """
    moment = now or utc_now()
    millis = int(moment.timestamp() * 1000)
    suffix = (rng or random).randint(0, 999)
    return f"TK-{millis % 100_000_000:08d}-{suffix:03d}"

