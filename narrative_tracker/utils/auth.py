"""API key rotation for the extraction endpoint.

Keys come from ``GOOGLE_API_KEYS`` (comma separated) or ``GOOGLE_API_KEY``.
A key that hit a rate limit sits out a cooldown before it is handed out
again.
"""

import os
import time
from typing import Dict, List, Optional

from dotenv import load_dotenv

from narrative_tracker.config import get_settings
from narrative_tracker.errors import ConfigurationError
from narrative_tracker.utils.logging_config import get_logger

load_dotenv()

# Silence "Both GOOGLE_API_KEY and GEMINI_API_KEY are set" warning
if "GEMINI_API_KEY" in os.environ:
    del os.environ["GEMINI_API_KEY"]

logger = get_logger("tracker.auth")


class KeyRotator:
    def __init__(self, keys: Optional[List[str]] = None):
        if keys is None:
            keys_str = os.getenv("GOOGLE_API_KEYS", "")
            if keys_str:
                keys = [k.strip() for k in keys_str.split(",") if k.strip()]
            elif os.getenv("GOOGLE_API_KEY"):
                keys = [os.environ["GOOGLE_API_KEY"]]
        if not keys:
            raise ConfigurationError("No GOOGLE_API_KEYS or GOOGLE_API_KEY found in environment.")

        self.keys = keys
        self._cooldowns: Dict[str, float] = {k: 0 for k in self.keys}
        self._current_index = 0

    def get_next_key(self) -> str:
        # Prefer a key that is not cooling down
        for _ in range(len(self.keys)):
            key = self.keys[self._current_index]
            self._current_index = (self._current_index + 1) % len(self.keys)

            if time.time() > self._cooldowns[key]:
                logger.debug("Selected key %s...", key[:8])
                return key

        best_key = min(self._cooldowns, key=self._cooldowns.get)
        wait_time = max(0.1, self._cooldowns[best_key] - time.time())
        logger.warning("All keys exhausted. Waiting %.1fs for earliest key", wait_time)
        time.sleep(wait_time)
        return best_key

    def mark_exhausted(self, key: str, duration: Optional[int] = None) -> None:
        if duration is None:
            duration = get_settings().key_cooldown_seconds
        logger.info("Marking key %s... as exhausted for %ds", key[:8], duration)
        self._cooldowns[key] = time.time() + duration


_rotator: Optional[KeyRotator] = None


def get_rotator() -> KeyRotator:
    # Built on first use so importing this module never requires keys
    global _rotator
    if _rotator is None:
        _rotator = KeyRotator()
    return _rotator


def get_api_key() -> str:
    return get_rotator().get_next_key()


def mark_key_exhausted(key: str) -> None:
    get_rotator().mark_exhausted(key)
