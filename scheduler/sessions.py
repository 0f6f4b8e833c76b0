"""Session timeout sweeper: expires or reroutes sessions whose reply never came."""
from __future__ import annotations

from flows.sessions import SessionManager
from scheduler.base import PeriodicTask


class SessionTimeoutSweeper(PeriodicTask):

    def __init__(self, sessions: SessionManager, interval_s: float = 60):
        super().__init__("session_timeouts", sessions.sweep_timeouts,
                         interval_s=interval_s, initial_delay_s=interval_s)
        self.sessions = sessions
