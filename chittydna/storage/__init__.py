"""chittydna storage backends.

Every persistent component talks to a StoragePort. Two implementations:
FileStorage (a directory tree) and MemoryStorage (a dict, for tests).
"""

from .filesystem import FileStorage
from .memory import MemoryStorage

__all__ = ["FileStorage", "MemoryStorage"]
