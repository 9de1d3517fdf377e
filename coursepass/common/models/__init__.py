from .base import Base
from .document import StoredDocument

__all__ = ["Base", "StoredDocument"]
