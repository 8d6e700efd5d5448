"""
Log context propagated through asyncio tasks.

Values are stored in contextvars so a task spawned by the consumer (the
heartbeat loop, for instance) inherits the group and member of the task
that created it.
"""

from contextvars import ContextVar
from typing import Dict, Optional

_client_id: ContextVar[Optional[str]] = ContextVar("client_id", default=None)
_component: ContextVar[Optional[str]] = ContextVar("component", default=None)
_group_id: ContextVar[Optional[str]] = ContextVar("group_id", default=None)
_member_id: ContextVar[Optional[str]] = ContextVar("member_id", default=None)

_VARS = {
    "client_id": _client_id,
    "component": _component,
    "group_id": _group_id,
    "member_id": _member_id,
}


def set_log_context(
    client_id: Optional[str] = None,
    component: Optional[str] = None,
    group_id: Optional[str] = None,
    member_id: Optional[str] = None,
) -> None:
    """
    Set context values for the current task. None leaves a value unchanged.

    Args:
        client_id: Client identifier sent to brokers
        component: producer, consumer, coordinator, ...
        group_id: Consumer group
        member_id: Member id assigned by the coordinator
    """
    if client_id is not None:
        _client_id.set(client_id)
    if component is not None:
        _component.set(component)
    if group_id is not None:
        _group_id.set(group_id)
    if member_id is not None:
        _member_id.set(member_id)


def get_log_context() -> Dict[str, Optional[str]]:
    """Current context values keyed by name."""
    return {name: var.get() for name, var in _VARS.items()}


def clear_log_context() -> None:
    """Reset every context value to None."""
    for var in _VARS.values():
        var.set(None)
