from .backends import JsonFileBackend, MemoryBackend, PersistenceBackend, SqlDocumentBackend, build_backend

__all__ = [
    "PersistenceBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "SqlDocumentBackend",
    "build_backend",
]
