"""Semantic chunking parsers for memfoundry."""

from .types import (
    ChunkType,
    ChunkMetadata,
    SemanticChunk,
    ParseResult,
    ParserError,
    LanguageParser,
    Visibility,
)
from .registry import (
    ParserRegistry,
    select_language,
    fallback_result,
    build_default_registry,
    default_registry,
    parse,
    parse_many,
)

__all__ = [
    'ChunkType',
    'ChunkMetadata',
    'SemanticChunk',
    'ParseResult',
    'ParserError',
    'LanguageParser',
    'Visibility',
    'ParserRegistry',
    'select_language',
    'fallback_result',
    'build_default_registry',
    'default_registry',
    'parse',
    'parse_many',
]
