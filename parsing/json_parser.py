"""JSON parser: one chunk per top-level key."""

import json
from typing import Any, List, Optional, Tuple

from .types import ChunkType, LanguageParser, ParserError, SemanticChunk, basename, split_lines, strip_extension, trim_range

DEPENDENCY_SECTIONS = ('dependencies', 'devDependencies', 'peerDependencies', 'optionalDependencies', 'require', 'require-dev')


def top_level_key_lines(content: str) -> List[Tuple[str, int]]:
    """Return ``(key, line)`` for each key of the root object, in order."""
    keys: List[Tuple[str, int]] = []
    depth = 0
    line = 1
    i = 0
    expect_key = False
    length = len(content)
    while i < length:
        ch = content[i]
        if ch == '\n':
            line += 1
        elif ch == '"':
            start_line = line
            j = i + 1
            buf = []
            while j < length and content[j] != '"':
                if content[j] == '\\':
                    buf.append(content[j:j + 2])
                    j += 2
                    continue
                if content[j] == '\n':
                    line += 1
                buf.append(content[j])
                j += 1
            if depth == 1 and expect_key:
                keys.append((json.loads('"' + ''.join(buf) + '"'), start_line))
                expect_key = False
            i = j
        elif ch in '{[':
            depth += 1
            if depth == 1 and ch == '{':
                expect_key = True
        elif ch in '}]':
            depth -= 1
        elif ch == ',' and depth == 1:
            expect_key = True
        i += 1
    return keys


def _value_type(value: Any) -> ChunkType:
    if isinstance(value, dict):
        return ChunkType.OBJECT
    if isinstance(value, list):
        return ChunkType.ARRAY_SECTION
    return ChunkType.CONFIG


class JSONParser(LanguageParser):
    language = 'json'
    extensions = ('.json', '.jsonc', '.json5')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ParserError(f"Invalid JSON at line {e.lineno}, column {e.colno}: {e.msg}") from e

        lines = split_lines(content)
        name = strip_extension(basename(source)) or 'json-document'

        if not isinstance(data, dict) or not data:
            start, end = trim_range(lines, 1, len(lines))
            return [self.make_chunk(_value_type(data), name, lines, start, end)]

        key_lines = top_level_key_lines(content)
        if len({line_no for _, line_no in key_lines}) != len(key_lines):
            # Several keys share a line (minified input); keep the object whole.
            start, end = trim_range(lines, 1, len(lines))
            return [self.make_chunk(ChunkType.OBJECT, name, lines, start, end, exports=list(data.keys()))]

        last_line = max(i for i, l in enumerate(lines, start=1) if l.strip())
        chunks: List[SemanticChunk] = []
        for index, (key, line_no) in enumerate(key_lines):
            end = key_lines[index + 1][1] - 1 if index + 1 < len(key_lines) else last_line - 1
            start, end = trim_range(lines, line_no, max(end, line_no))
            value = data.get(key)
            dependencies: List[str] = []
            if key in DEPENDENCY_SECTIONS and isinstance(value, dict):
                dependencies = list(value.keys())
            chunks.append(self.make_chunk(
                _value_type(value), key, lines, start, end,
                dependencies=dependencies,
                exports=[key],
            ))
        return self.fill_gaps(lines, chunks, ChunkType.OBJECT, name)
