"""
Inference sessions and the bounded session pool.

Provides:
- Session: One caller's exclusive lease on the runtime
- SessionState: Session state enum
- SessionPool: Bounded, FIFO-fair leasing of sessions against a RuntimeHandle
"""

from llm_runtime_lite.sessions.session import Session, SessionState
from llm_runtime_lite.sessions.pool import SessionPool

__all__ = ["Session", "SessionState", "SessionPool"]
