"""
Error taxonomy for patrolwarden.

Runtime problems inside the tick loop are caught per patrol and surfaced
as operator warnings; these classes let callers tell the cases apart.
"""

from dataclasses import dataclass


class PatrolError(Exception):
    """Base class for patrolwarden errors."""
    pass


class ConfigurationInvalid(PatrolError):
    """Persisted or submitted configuration violates an invariant."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key}: {reason}")


class MissingCapability(PatrolError):
    """The active system adapter does not implement a capability."""
    def __init__(self, capability: str, adapter: str):
        self.capability = capability
        self.adapter = adapter
        super().__init__(f"Adapter '{adapter}' does not support {capability}")


class MissingReference(PatrolError):
    """A token, actor, scene, waypoint or patrol can no longer be resolved."""
    def __init__(self, kind: str, ref_id: str | None):
        self.kind = kind
        self.ref_id = ref_id
        super().__init__(f"{kind} not found: {ref_id}")


class UndoUnavailable(PatrolError):
    """The log entry carries no undo descriptor."""
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"No undo available for log entry {entry_id}")


class PartialUndoFailure(PatrolError):
    """Some steps of a multi-effect undo failed."""
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Undo partially failed: {'; '.join(errors)}")


@dataclass
class ApprovalRequired:
    """
    Not an error: the decision was queued and waits for the GM.

    Returned by the automation gate instead of a performed result.
    """
    pending_id: str
    action_type: str
    patrol_id: str | None = None

    def to_result(self) -> dict:
        return {
            "success": True,
            "pending": True,
            "pending_id": self.pending_id,
            "type": self.action_type,
        }
