"""SQL parser: one chunk per statement, typed by its leading keywords."""

import re
from typing import List, Optional, Tuple

from .types import ChunkType, LanguageParser, SemanticChunk, basename, split_lines

STATEMENT_PATTERNS = [
    ('CREATE_TABLE', re.compile(r'^CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?([\w."`\[\]]+)', re.I)),
    ('CREATE_VIEW', re.compile(r'^CREATE\s+(?:OR\s+REPLACE\s+)?(?:MATERIALIZED\s+)?VIEW\s+(?:IF\s+NOT\s+EXISTS\s+)?([\w."`\[\]]+)', re.I)),
    ('CREATE_INDEX', re.compile(r'^CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?([\w."`\[\]]+)', re.I)),
    ('CREATE_FUNCTION', re.compile(r'^CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\s+([\w."`\[\]]+)', re.I)),
    ('CREATE_PROCEDURE', re.compile(r'^CREATE\s+(?:OR\s+REPLACE\s+)?PROCEDURE\s+([\w."`\[\]]+)', re.I)),
    ('CREATE_TRIGGER', re.compile(r'^CREATE\s+(?:OR\s+REPLACE\s+)?TRIGGER\s+([\w."`\[\]]+)', re.I)),
    ('CREATE_TYPE', re.compile(r'^CREATE\s+TYPE\s+([\w."`\[\]]+)', re.I)),
    ('ALTER_TABLE', re.compile(r'^ALTER\s+TABLE\s+(?:ONLY\s+)?(?:IF\s+EXISTS\s+)?([\w."`\[\]]+)', re.I)),
    ('DROP_TABLE', re.compile(r'^DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?([\w."`\[\]]+)', re.I)),
    ('DROP_INDEX', re.compile(r'^DROP\s+INDEX\s+(?:IF\s+EXISTS\s+)?([\w."`\[\]]+)', re.I)),
    ('INSERT', re.compile(r'^INSERT\s+(?:OR\s+\w+\s+)?INTO\s+([\w."`\[\]]+)', re.I)),
    ('UPDATE', re.compile(r'^UPDATE\s+([\w."`\[\]]+)', re.I)),
    ('DELETE', re.compile(r'^DELETE\s+FROM\s+([\w."`\[\]]+)', re.I)),
    ('SELECT', re.compile(r'^(?:WITH\b.*?\)\s*)?SELECT\b.*?\bFROM\s+([\w."`\[\]]+)', re.I | re.S)),
    ('PRAGMA', re.compile(r'^PRAGMA\s+(\w+)', re.I)),
]

CHUNK_TYPES = {
    'CREATE_TABLE': ChunkType.STRUCT,
    'CREATE_VIEW': ChunkType.STRUCT,
    'CREATE_TYPE': ChunkType.TYPE,
    'CREATE_FUNCTION': ChunkType.FUNCTION,
    'CREATE_PROCEDURE': ChunkType.FUNCTION,
    'CREATE_TRIGGER': ChunkType.FUNCTION,
    'CREATE_INDEX': ChunkType.CONFIG,
    'ALTER_TABLE': ChunkType.CONFIG,
    'DROP_TABLE': ChunkType.CONFIG,
    'DROP_INDEX': ChunkType.CONFIG,
    'PRAGMA': ChunkType.CONFIG,
}

NAME_PREFIXES = {
    'ALTER_TABLE': 'alter_',
    'DROP_TABLE': 'drop_',
    'DROP_INDEX': 'drop_',
    'INSERT': 'insert_',
    'UPDATE': 'update_',
    'DELETE': 'delete_',
    'SELECT': 'select_',
    'PRAGMA': 'pragma_',
}

TABLE_REFERENCE_RE = re.compile(r'\b(?:FROM|JOIN|INTO|UPDATE|REFERENCES|ON\s+TABLE|ON)\s+([\w."`\[\]]+)', re.I)
DOLLAR_QUOTE_RE = re.compile(r'\$(\w*)\$')


def clean_identifier(name: str) -> str:
    return name.strip('"`[]').split('.')[-1].strip('"`[]')


def statement_ranges(lines: List[str]) -> List[Tuple[int, int]]:
    """1-based line ranges of statements, split at ``;`` outside strings and comments."""
    ranges = []
    start = None
    in_block = False
    quote = ''
    for line_no, line in enumerate(lines, start=1):
        i = 0
        while i < len(line):
            ch = line[i]
            if in_block:
                if line.startswith('*/', i):
                    in_block = False
                    i += 1
            elif quote:
                if line.startswith(quote, i):
                    i += len(quote) - 1
                    quote = ''
            elif line.startswith('--', i):
                break
            elif line.startswith('/*', i):
                in_block = True
                i += 1
            else:
                if not ch.isspace() and start is None:
                    start = line_no
                if ch in '\'"`':
                    quote = ch
                elif ch == '$':
                    dollar = DOLLAR_QUOTE_RE.match(line, i)
                    if dollar:
                        quote = dollar.group(0)
                        i += len(quote) - 1
                elif ch == ';':
                    ranges.append((start, line_no))
                    start = None
            i += 1
    if start is not None:
        last = max(n for n, l in enumerate(lines, start=1) if l.strip())
        ranges.append((start, last))
    return ranges


def classify(statement: str) -> Tuple[str, Optional[str]]:
    text = statement.strip()
    for kind, pattern in STATEMENT_PATTERNS:
        match = pattern.match(text)
        if match:
            return kind, clean_identifier(match.group(1))
    keyword = text.split(None, 1)[0].upper() if text else 'STATEMENT'
    return re.sub(r'\W', '', keyword) or 'STATEMENT', None


class SQLParser(LanguageParser):
    language = 'sql'
    extensions = ('.sql', '.ddl', '.dml')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        chunks: List[SemanticChunk] = []
        previous_end = 0
        for start, end in statement_ranges(lines):
            # Two statements on one line share a chunk.
            if start <= previous_end:
                if chunks:
                    merged = chunks.pop()
                    start = merged.start_line
                else:
                    start = previous_end + 1
            chunk = self.make_chunk(ChunkType.CODE, '', lines, start, end)
            kind, identifier = classify(chunk.content)
            chunk.type = CHUNK_TYPES.get(kind, ChunkType.CODE)
            if identifier:
                chunk.name = f"{NAME_PREFIXES.get(kind, '')}{identifier}"
            else:
                chunk.name = kind.lower()
            references = [clean_identifier(ref) for ref in TABLE_REFERENCE_RE.findall(chunk.content)]
            chunk.metadata.dependencies = [r for r in dict.fromkeys(references) if r and r != identifier]
            if kind.startswith('CREATE_') and identifier:
                chunk.metadata.exports = [identifier]
            chunk.metadata.extra = {'statement': kind}
            chunks.append(chunk)
            previous_end = end

        return self.fill_gaps(lines, chunks, ChunkType.CODE, basename(source) or 'sql')
