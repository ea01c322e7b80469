from .base import Store
from .memory import InMemoryStore

__all__ = ["InMemoryStore", "Store"]
