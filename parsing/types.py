"""Core types for semantic chunking.

A parser turns one file (or blob of content) into a list of SemanticChunk
objects. Chunks are 1-based and line-inclusive. Top-level chunks of a
successful parse never overlap and together cover every non-blank line;
nested chunks (methods, stage instructions, playbook tasks) point at their
enclosing chunk through ``metadata.parent``.
"""

import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class ChunkType(str, Enum):
    """Closed set of chunk kinds produced by the parsers."""
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    VARIABLE = "variable"
    INTERFACE = "interface"
    TYPE = "type"
    IMPORT = "import"
    RESOURCE = "resource"
    TASK = "task"
    PLAY = "play"
    SERVICE = "service"
    CONFIG = "config"
    OBJECT = "object"
    ARRAY_SECTION = "array_section"
    INSTRUCTION = "instruction"
    STAGE = "stage"
    MODULE = "module"
    STRUCT = "struct"
    PACKAGE = "package"
    CONSTANT = "constant"
    HEADING = "heading"
    TEXT = "text"
    CODE_BLOCK = "code-block"
    LIST = "list"
    QUOTE = "quote"
    TABLE = "table"
    IMAGE = "image"
    LINK = "link"
    DOCUMENT = "document"
    EXPORT = "export"
    CODE = "code"
    ENUM = "enum"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    PROTECTED = "protected"


class ParserError(Exception):
    """Raised by a language parser when it cannot make sense of its input."""


@dataclass
class ChunkMetadata:
    """Per-chunk metadata shared by every language."""
    language: str
    parent: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    decorators: List[str] = field(default_factory=list)
    parameters: List[str] = field(default_factory=list)
    return_type: Optional[str] = None
    visibility: Optional[Visibility] = None
    is_async: bool = False
    is_static: bool = False
    is_abstract: bool = False
    heading_level: Optional[int] = None
    code_language: Optional[str] = None
    exported: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.visibility is not None:
            data['visibility'] = self.visibility.value
        return data


@dataclass
class SemanticChunk:
    """A named, typed, line-bounded excerpt of a source unit."""
    type: ChunkType
    name: str
    content: str
    start_line: int
    end_line: int
    metadata: ChunkMetadata

    def __post_init__(self):
        if self.start_line < 1:
            self.start_line = 1
        if self.end_line < self.start_line:
            self.end_line = self.start_line

    @property
    def parent(self) -> Optional[str]:
        return self.metadata.parent

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'type': self.type.value,
            'name': self.name,
            'content': self.content,
            'start_line': self.start_line,
            'end_line': self.end_line,
            'metadata': self.metadata.to_dict(),
        }


@dataclass
class ParseResult:
    """Output of parsing one unit of content."""
    success: bool
    chunks: List[SemanticChunk] = field(default_factory=list)
    error: Optional[str] = None
    fallback_used: bool = False
    language: Optional[str] = None
    parser: Optional[str] = None

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    def top_level_chunks(self) -> List[SemanticChunk]:
        return [chunk for chunk in self.chunks if chunk.metadata.parent is None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'chunks': [chunk.to_dict() for chunk in self.chunks],
            'error': self.error,
            'fallback_used': self.fallback_used,
            'language': self.language,
            'parser': self.parser,
        }


def split_lines(content: str) -> List[str]:
    """Split content into lines the way line numbers are counted."""
    return content.split('\n')


def basename(path: Optional[str]) -> str:
    if not path:
        return ''
    return os.path.basename(path.replace('\\', '/'))


def strip_extension(name: str) -> str:
    root, _ = os.path.splitext(name)
    return root or name


def visibility_from_name(name: str) -> Visibility:
    """Infer visibility from the leading-underscore naming convention."""
    if name.startswith('__') and name.endswith('__'):
        return Visibility.PUBLIC
    if name.startswith('__'):
        return Visibility.PRIVATE
    if name.startswith('_'):
        return Visibility.PROTECTED
    return Visibility.PUBLIC


class LanguageParser:
    """Base class for the per-language parsers.

    Subclasses set ``language``, ``extensions`` (lower-case, with the dot),
    optionally ``filenames`` (exact lower-case basenames such as
    ``dockerfile``) and implement :meth:`parse_chunks`. Raising from
    :meth:`parse_chunks` is fine; the registry turns it into a fallback.
    """

    language: str = ''
    extensions: Tuple[str, ...] = ()
    filenames: Tuple[str, ...] = ()

    def parse(self, content: str, source: Optional[str] = None) -> ParseResult:
        chunks = self.parse_chunks(content, source)
        chunks = [chunk for chunk in chunks if chunk.content.strip()]
        return ParseResult(
            success=True,
            chunks=chunks,
            language=self.language,
            parser=self.language,
        )

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        raise NotImplementedError

    def make_chunk(
        self,
        chunk_type: ChunkType,
        name: str,
        lines: List[str],
        start_line: int,
        end_line: int,
        **metadata: Any,
    ) -> SemanticChunk:
        """Build a chunk whose content is sliced from ``lines``."""
        return SemanticChunk(
            type=chunk_type,
            name=name,
            content=extract_lines(lines, start_line, end_line),
            start_line=start_line,
            end_line=end_line,
            metadata=ChunkMetadata(language=metadata.pop('language', self.language), **metadata),
        )

    def fill_gaps(
        self,
        lines: List[str],
        chunks: List[SemanticChunk],
        chunk_type: ChunkType = ChunkType.CODE,
        name: str = 'module',
    ) -> List[SemanticChunk]:
        """Add chunks for non-blank lines no top-level chunk covers."""
        gaps = uncovered_ranges(lines, chunks)
        filler = [
            self.make_chunk(chunk_type, name, lines, start, end)
            for start, end in gaps
        ]
        return sort_chunks(chunks + filler)


def extract_lines(lines: List[str], start_line: int, end_line: int) -> str:
    return '\n'.join(lines[start_line - 1:end_line])


def sort_chunks(chunks: Iterable[SemanticChunk]) -> List[SemanticChunk]:
    # Parents sort before the children that share their start line.
    return sorted(chunks, key=lambda c: (c.start_line, c.metadata.parent is not None, c.end_line))


def trim_range(lines: List[str], start_line: int, end_line: int) -> Tuple[int, int]:
    """Shrink a range so it starts and ends on non-blank lines."""
    while start_line < end_line and not lines[start_line - 1].strip():
        start_line += 1
    while end_line > start_line and not lines[end_line - 1].strip():
        end_line -= 1
    return start_line, end_line


def uncovered_ranges(lines: List[str], chunks: Iterable[SemanticChunk]) -> List[Tuple[int, int]]:
    """Return maximal runs of non-blank lines outside every top-level chunk.

    Runs are split at blank lines and at chunk boundaries, so each returned
    range is contiguous non-blank text.
    """
    covered = [False] * (len(lines) + 2)
    for chunk in chunks:
        if chunk.metadata.parent is not None:
            continue
        for line_no in range(chunk.start_line, min(chunk.end_line, len(lines)) + 1):
            covered[line_no] = True

    ranges: List[Tuple[int, int]] = []
    start = None
    for line_no in range(1, len(lines) + 1):
        open_line = not covered[line_no] and lines[line_no - 1].strip() != ''
        if open_line and start is None:
            start = line_no
        elif not open_line and start is not None:
            ranges.append((start, line_no - 1))
            start = None
    if start is not None:
        ranges.append((start, len(lines)))
    return ranges
