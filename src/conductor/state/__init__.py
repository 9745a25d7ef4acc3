from conductor.state.memory import PersistentMemory
from conductor.state.store import StateStore

__all__ = ["PersistentMemory", "StateStore"]
