"""Fragment production for the retrieval index."""

from .service import (
    Fragmenter,
    FragmenterConfig,
    IngestionError,
    LangChainFragmenter,
    fragments_from_chunks,
)

__all__ = [
    "Fragmenter",
    "FragmenterConfig",
    "IngestionError",
    "LangChainFragmenter",
    "fragments_from_chunks",
]
