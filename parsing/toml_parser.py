"""TOML parser: root keys, ``[tables]`` and ``[[arrays of tables]]``."""

import re
import tomllib
from typing import Any, Dict, List, Optional

from .types import ChunkType, LanguageParser, ParserError, SemanticChunk, basename, split_lines, trim_range

TABLE_RE = re.compile(r'^\s*(\[\[?)\s*([^\]]+?)\s*\]\]?\s*(?:#.*)?$')
KEY_RE = re.compile(r'''^(?P<key>[A-Za-z0-9_.-]+|"[^"]+"|'[^']+')\s*=''')
DEPENDENCY_TABLES = ('dependencies', 'dev-dependencies', 'build-dependencies', 'project.optional-dependencies',
                     'tool.poetry.dependencies', 'tool.poetry.dev-dependencies')


def lookup(data: Dict[str, Any], dotted: str) -> Any:
    node: Any = data
    for part in dotted.split('.'):
        part = part.strip().strip('"\'')
        if isinstance(node, list):
            node = node[-1] if node else None
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


class TOMLParser(LanguageParser):
    language = 'toml'
    extensions = ('.toml',)

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as e:
            raise ParserError(f"Invalid TOML: {e}") from e

        lines = split_lines(content)
        headers = []
        for line_no, line in enumerate(lines, start=1):
            match = TABLE_RE.match(line)
            if match:
                headers.append((line_no, match.group(2), match.group(1) == '[['))

        chunks: List[SemanticChunk] = []
        root_end = headers[0][0] - 1 if headers else len(lines)
        chunks.extend(self._root_keys(data, lines, root_end))

        for index, (line_no, table, is_array) in enumerate(headers):
            end = headers[index + 1][0] - 1 if index + 1 < len(headers) else len(lines)
            start, end = trim_range(lines, line_no, max(end, line_no))
            value = lookup(data, table)
            dependencies: List[str] = []
            if table in DEPENDENCY_TABLES or table.endswith('.dependencies'):
                if isinstance(value, dict):
                    dependencies = list(value.keys())
            chunks.append(self.make_chunk(
                ChunkType.ARRAY_SECTION if is_array else ChunkType.CONFIG,
                table, lines, start, end,
                dependencies=dependencies,
                exports=[table],
            ))

        return self.fill_gaps(lines, chunks, ChunkType.CONFIG, basename(source) or 'toml-document')

    def _root_keys(self, data: Dict[str, Any], lines: List[str], root_end: int) -> List[SemanticChunk]:
        keys = []
        for line_no in range(1, root_end + 1):
            match = KEY_RE.match(lines[line_no - 1])
            if match:
                keys.append((match.group('key').strip('"\''), line_no))

        chunks = []
        for index, (key, line_no) in enumerate(keys):
            end = keys[index + 1][1] - 1 if index + 1 < len(keys) else root_end
            start, end = trim_range(lines, line_no, max(end, line_no))
            value = lookup(data, key)
            chunk_type = ChunkType.OBJECT if isinstance(value, dict) else ChunkType.VARIABLE
            chunks.append(self.make_chunk(chunk_type, key, lines, start, end, exports=[key]))
        return chunks
