import hashlib
import hmac
import logging
import math
import secrets
import time
from typing import Callable, Optional

from cache_dropin.domain.dropin import Principal

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SEC = 86_400
TOKEN_LENGTH = 10


class InvalidActionToken(Exception):
    """Raised when a token was not minted for the action it accompanies."""


class ActionTokenService:
    """Mints and verifies per-action anti-replay tokens.

    A token is an HMAC over ``tick|action|principal|session``. One tick is half
    the lifetime; tokens from the current and the previous tick verify, so a
    token stays valid between half and the full lifetime.
    """

    def __init__(
        self,
        secret_key: str,
        lifetime_sec: int = DEFAULT_TOKEN_LIFETIME_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret_key:
            secret_key = secrets.token_hex(32)
            logger.warning("no secret key configured; action tokens will not survive a restart")
        self._key = secret_key.encode("utf-8")
        self._lifetime = max(2, int(lifetime_sec))
        self._clock = clock

    def _tick(self) -> int:
        return int(math.ceil(self._clock() / (self._lifetime / 2)))

    def _digest(self, tick: int, action: str, principal: Optional[Principal]) -> str:
        principal_id = principal.principal_id if principal is not None else ""
        session = principal.session if principal is not None else ""
        message = f"{tick}|{action}|{principal_id}|{session}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()[-12:-2]

    def mint(self, action: str, principal: Optional[Principal]) -> str:
        return self._digest(self._tick(), action, principal)

    def verify(self, token: str, action: str, principal: Optional[Principal]) -> int:
        """Return 1 for a current-tick token, 2 for a previous-tick token, 0 if invalid."""
        supplied = (token or "").strip()
        if len(supplied) != TOKEN_LENGTH:
            return 0
        tick = self._tick()
        if secrets.compare_digest(supplied, self._digest(tick, action, principal)):
            return 1
        if secrets.compare_digest(supplied, self._digest(tick - 1, action, principal)):
            return 2
        return 0

    def require(self, token: str, action: str, principal: Optional[Principal]) -> int:
        age = self.verify(token, action, principal)
        if not age:
            raise InvalidActionToken(f"token rejected for action {action!r}")
        return age
