from datetime import datetime, timedelta
from typing import Optional
import logging
import threading

from agentchat.config import INACTIVITY_TIMEOUT, SWEEP_INTERVAL
from agentchat.models import AgentSession, utcnow
from agentchat.store import SessionStore

logger = logging.getLogger(__name__)


def release_session(agent_session: AgentSession):
    # AI personas hold no remote resources, nothing to tear down
    logger.debug("released agent session %s", agent_session.id)


def end_stale_sessions(
    store: SessionStore,
    now: Optional[datetime] = None,
    inactivity_timeout: timedelta = INACTIVITY_TIMEOUT,
    metrics=None,
) -> int:
    """
    Close every ACTIVE session idle for longer than `inactivity_timeout`.

    A failure on one session is logged and the sweep moves on to the next.
    The sweep itself never raises; if it cannot run at all it reports 0.
    """
    try:
        now = now or utcnow()
        cutoff = now - inactivity_timeout
        stale_sessions = store.find_inactive_sessions(cutoff)
        if stale_sessions:
            logger.info("found %d inactive sessions to clean up", len(stale_sessions))

        closed = 0
        for stale_session in stale_sessions:
            try:
                release_session(stale_session)
                if store.close_session(stale_session.id, ended_at=now, cutoff=cutoff):
                    closed += 1
                    logger.info("closed inactive session %s", stale_session.id)
            except Exception:
                logger.exception("failed to clean up session %s", stale_session.id)
                if metrics is not None:
                    metrics.incr("reaper.errors")

        if metrics is not None and closed:
            metrics.incr("reaper.closed", closed)
        return closed
    except Exception:
        logger.exception("error during session cleanup")
        if metrics is not None:
            metrics.incr("reaper.errors")
        return 0


class InactivityReaper:
    """Runs `end_stale_sessions` every `interval` seconds on a daemon thread."""

    def __init__(
        self,
        store: SessionStore,
        interval: float = SWEEP_INTERVAL,
        inactivity_timeout: timedelta = INACTIVITY_TIMEOUT,
        metrics=None,
        clock=utcnow,
    ):
        self.store = store
        self.interval = interval
        self.inactivity_timeout = inactivity_timeout
        self.metrics = metrics
        self.clock = clock
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        closed = end_stale_sessions(
            self.store,
            now=self.clock(),
            inactivity_timeout=self.inactivity_timeout,
            metrics=self.metrics,
        )
        if closed:
            logger.info("auto-cleanup completed: %d sessions closed", closed)
        return closed

    def _run(self):
        while not self._stopped.wait(self.interval):
            self.run_once()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="inactivity-reaper", daemon=True)
        self._thread.start()
        logger.info(
            "auto-cleanup started: sessions idle for %s are closed every %ss",
            self.inactivity_timeout, self.interval,
        )

    def stop(self, timeout: Optional[float] = None):
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
