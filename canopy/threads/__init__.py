"""Per-node chat threads: isolated sessions and document inheritance."""

from canopy.threads.manager import Thread, ThreadContextManager, ThreadNotFoundError
from canopy.threads.session import ChatSession, RegistrySessionFactory

__all__ = [
    "ChatSession",
    "RegistrySessionFactory",
    "Thread",
    "ThreadContextManager",
    "ThreadNotFoundError",
]
