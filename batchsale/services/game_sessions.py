"""
Game Session Registry - Server-side record of tier unlocks.

A finished game is resolved to a tier once, here, and stored under a random
session id. Purchases present that id and the issuer reads the tier from the
stored session, so a buyer cannot claim a tier they did not earn.
"""

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from structlog import get_logger

from batchsale.exceptions import InvalidRequestError
from batchsale.models.domain import GameSession, TierResolution
from batchsale.services import tiers

logger = get_logger(__name__)

NO_COMPLETED_GAME = "No completed game found for this session"
GAME_RESULT_EXPIRED = "Game result has expired. Please play again."


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class GameSessionStore(Protocol):
    """Game session persistence used by the registry."""

    async def insert_game_session(self, game_session: GameSession) -> GameSession: ...

    async def get_game_session(self, session_id: str) -> GameSession | None: ...

    async def delete_game_sessions(self, valid_before: datetime) -> int: ...


@dataclass(frozen=True)
class CompletedGame:
    """Tier resolution plus the session that records it (None when ungated)."""

    resolution: TierResolution
    session: GameSession | None


class GameSessionRegistry:
    """Issues and verifies game sessions."""

    def __init__(
        self,
        store: GameSessionStore,
        validity_minutes: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._validity = timedelta(minutes=validity_minutes)
        self._clock = clock

    async def complete(self, score: int) -> CompletedGame:
        """
        Resolve a finished game and persist it when it unlocks a tier.

        Raises:
            ValueError: score is negative
        """
        resolution = tiers.resolve(score)
        if resolution.tier is None:
            logger.info("game_completed_ungated", score=score)
            return CompletedGame(resolution=resolution, session=None)

        now = self._clock()
        session = await self._store.insert_game_session(
            GameSession(
                id=secrets.token_urlsafe(24),
                score=score,
                tier=resolution.tier,
                completed_at=now,
                valid_until=now + self._validity,
            )
        )
        logger.info(
            "game_session_completed",
            session_id=session.id,
            score=score,
            tier=session.tier.value,
        )
        return CompletedGame(resolution=resolution, session=session)

    async def verify_for_purchase(self, session_id: str | None) -> GameSession:
        """
        Load the session a purchase refers to.

        Raises:
            InvalidRequestError: no such session, or its result has expired
        """
        session = await self._store.get_game_session(session_id) if session_id else None
        if session is None:
            logger.warning("game_session_unknown", session_id=session_id)
            raise InvalidRequestError(NO_COMPLETED_GAME, field="game_session_id")

        if not session.is_valid_at(self._clock()):
            logger.info("game_session_expired", session_id=session.id)
            raise InvalidRequestError(GAME_RESULT_EXPIRED, field="game_session_id")

        return session

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete sessions that can no longer unlock a purchase."""
        deleted = await self._store.delete_game_sessions(valid_before=now or self._clock())
        if deleted:
            logger.info("game_sessions_purged", count=deleted)
        return deleted
