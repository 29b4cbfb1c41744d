"""Debugger session lifecycle."""

from .session import (
    DebugLaunchFailed,
    DebugSessionManager,
    NoActiveSession,
    SessionHandle,
    get_session_manager,
    kill_process_tree,
)

__all__ = [
    "DebugLaunchFailed",
    "DebugSessionManager",
    "NoActiveSession",
    "SessionHandle",
    "get_session_manager",
    "kill_process_tree",
]
