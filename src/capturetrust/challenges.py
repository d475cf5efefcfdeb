"""Single-use, time-bound challenge nonces for device registration."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from capturetrust.errors import ChallengeError
from capturetrust.store import Database

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32


@dataclass(frozen=True)
class Challenge:
    """An issued challenge."""

    value: bytes
    expires_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge": self.value.hex(),
            "expires_at": datetime.fromtimestamp(self.expires_at, UTC).isoformat(),
        }


class ChallengeStore:
    """Issues and atomically consumes registration challenges.

    Consumption is a single conditional UPDATE, so a challenge can be
    redeemed at most once even under concurrent registrations.
    """

    def __init__(
        self,
        db: Database,
        ttl_seconds: int = 300,
        rate_limit: int = 10,
        rate_window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.ttl_seconds = ttl_seconds
        self.rate_limit = rate_limit
        self.rate_window_seconds = rate_window_seconds
        self._clock = clock

    def issue(self, client_id: str = "anonymous") -> Challenge:
        """Issue a fresh challenge.

        Raises:
            ChallengeError: If the client exceeded its issuance rate
        """
        now = self._clock()
        value = secrets.token_bytes(CHALLENGE_BYTES)
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM challenges WHERE expires_at < ?", (now - self.ttl_seconds,))
            recent = conn.execute(
                "SELECT COUNT(*) FROM challenges WHERE client_id = ? AND issued_at > ?",
                (client_id, now - self.rate_window_seconds),
            ).fetchone()[0]
            if recent >= self.rate_limit:
                raise ChallengeError(
                    f"Challenge rate limit exceeded for {client_id}",
                    retry_after=self.rate_window_seconds,
                )
            conn.execute(
                "INSERT INTO challenges (challenge, client_id, issued_at, expires_at, used) VALUES (?, ?, ?, ?, 0)",
                (value, client_id, now, now + self.ttl_seconds),
            )
        logger.debug("Issued challenge for %s", client_id)
        return Challenge(value=value, expires_at=now + self.ttl_seconds)

    def consume(self, value: bytes) -> bool:
        """Mark a challenge used. False if unknown, expired or already used."""
        now = self._clock()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE challenges SET used = 1 WHERE challenge = ? AND used = 0 AND expires_at >= ?",
                (value, now),
            )
            consumed = cursor.rowcount == 1
        if not consumed:
            logger.info("Challenge rejected (unknown, expired or reused)")
        return consumed
