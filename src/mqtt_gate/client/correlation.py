"""
Command correlation.

Every command published to the gate carries an opaque correlation token and a
reply address. Responses arrive on that address in any order, so they are
matched back to the request by token only.
"""
import itertools
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from mqtt_gate.models import GateAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingCommand:
    token: str
    action: GateAction
    reply_to: Optional[str]
    issued_at: float


class CommandRegistry:
    """
    Tracks in-flight commands by correlation token.

    Entries leave the registry exactly once: through `resolve`, `discard`,
    `expire` or `drop_all`. Tokens are never handed out twice.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._pending: Dict[str, PendingCommand] = {}
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, token: str) -> bool:
        return token in self._pending

    @property
    def pending(self) -> List[PendingCommand]:
        return list(self._pending.values())

    def issue(self, action: GateAction, reply_to: Optional[str] = None) -> str:
        # The sequence part makes the token unique for the registry's lifetime
        token = f"{next(self._sequence):06d}-{secrets.token_hex(6)}"
        self._pending[token] = PendingCommand(
            token=token,
            action=GateAction(action),
            reply_to=reply_to,
            issued_at=self._clock(),
        )
        logger.debug(f"Issued token {token} for {action}")
        return token

    def resolve(self, token: Optional[str], outcome=None, reply_to: Optional[str] = None) -> Optional[GateAction]:
        """
        Removes the pending command and returns its action, or None when the
        token is unknown, already resolved, or arrived on another session's
        reply address.
        """
        pending = self._pending.get(token) if token else None
        if pending is None:
            logger.debug(f"Ignoring response for unknown token {token!r}")
            return None
        if reply_to is not None and pending.reply_to is not None and reply_to != pending.reply_to:
            logger.warning(f"Token {token} answered on {reply_to}, expected {pending.reply_to}; ignored")
            return None
        del self._pending[token]
        logger.debug(f"Resolved token {token} ({pending.action.value}) with {outcome!r}")
        return pending.action

    def discard(self, token: str) -> bool:
        """Forgets a command whose publish failed. Returns whether it was pending."""
        return self._pending.pop(token, None) is not None

    def drop_all(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        if count:
            logger.info(f"Dropped {count} pending command(s)")
        return count

    def expire(self, max_age: float, now: Optional[float] = None) -> List[PendingCommand]:
        now = self._clock() if now is None else now
        expired = [p for p in self._pending.values() if now - p.issued_at >= max_age]
        for pending in expired:
            del self._pending[pending.token]
            logger.warning(f"Command {pending.action.value} ({pending.token}) expired without a response")
        return expired
