"""
Per-instrument activity state machine.

Entry and exit on the same token are mutually exclusive:

    IDLE -> ENTERING -> IDLE
    IDLE -> EXITING  -> IDLE

A caller that finds the token busy skips it for this cycle; nobody waits.
"""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Dict, Iterator

logger = logging.getLogger(__name__)


class InstrumentActivity(str, Enum):
    IDLE = "idle"
    ENTERING = "entering"
    EXITING = "exiting"


class ActivityRegistry:
    """
    Tracks what each token is currently doing.

    Guarded by a threading lock so transitions stay atomic even if callers
    run on worker threads.
    """

    def __init__(self):
        self._states: Dict[str, InstrumentActivity] = {}
        self._lock = threading.Lock()

    def state(self, token_id: str) -> InstrumentActivity:
        with self._lock:
            return self._states.get(token_id, InstrumentActivity.IDLE)

    def try_begin(self, token_id: str, activity: InstrumentActivity) -> bool:
        """
        Move a token from IDLE to activity.

        Returns:
            True if the transition happened, False if the token is busy
        """
        if activity == InstrumentActivity.IDLE:
            raise ValueError("try_begin needs ENTERING or EXITING")

        with self._lock:
            current = self._states.get(token_id, InstrumentActivity.IDLE)
            if current != InstrumentActivity.IDLE:
                logger.debug(f"{token_id[:16]}... busy ({current.value}), skipping {activity.value}")
                return False
            self._states[token_id] = activity
            return True

    def finish(self, token_id: str) -> None:
        """Return a token to IDLE."""
        with self._lock:
            self._states.pop(token_id, None)

    @contextmanager
    def claim(self, token_id: str, activity: InstrumentActivity) -> Iterator[bool]:
        """
        Context manager form of try_begin/finish.

        Yields True when claimed; the token is released on exit only if it
        was claimed here.

            with registry.claim(token, InstrumentActivity.EXITING) as claimed:
                if not claimed:
                    return
                ...
        """
        claimed = self.try_begin(token_id, activity)
        try:
            yield claimed
        finally:
            if claimed:
                self.finish(token_id)

    def busy(self) -> Dict[str, InstrumentActivity]:
        with self._lock:
            return dict(self._states)
