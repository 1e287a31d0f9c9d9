"""Session state persistence."""

from .session import AgentMarker, SessionStateManager, SessionStatus, YamlStatePort

__all__ = ["AgentMarker", "SessionStateManager", "SessionStatus", "YamlStatePort"]
