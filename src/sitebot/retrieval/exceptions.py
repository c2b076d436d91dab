"""Retrieval exceptions."""


class RetrievalError(Exception):
    """Base exception for knowledge retrieval."""

    pass


class KnowledgeStoreError(RetrievalError):
    """The knowledge store could not be read.

    Raised instead of returning an empty result: answering without knowing
    which chunks are trusted is not allowed.
    """

    def __init__(self, message: str, connection_id: str | None = None):
        self.connection_id = connection_id
        super().__init__(message)


class ChunkNotFoundError(RetrievalError):
    """Referenced knowledge chunk does not exist."""

    def __init__(self, chunk_id: str):
        self.chunk_id = chunk_id
        super().__init__(f"Knowledge chunk {chunk_id} not found")
