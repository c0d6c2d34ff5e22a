"""Core infrastructure components: persisted state."""

from cloud_provisioner.core.state import ResourceInstance, State, StateStore

__all__ = ["ResourceInstance", "State", "StateStore"]
