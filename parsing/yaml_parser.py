"""YAML parser.

Documents are validated with PyYAML; chunk boundaries come from the raw
lines so that line numbers stay exact. Compose files get nested ``service``
chunks, Kubernetes manifests one ``resource`` chunk per document.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .types import ChunkType, LanguageParser, ParserError, SemanticChunk, basename, split_lines, strip_extension, trim_range

TOP_LEVEL_KEY_RE = re.compile(r'''^(?P<key>[^\s#\-'"][^:#]*?|"[^"]+"|'[^']+')\s*:(?:\s|$)''')
CHILD_KEY_RE = re.compile(r'''^(?P<indent>\s+)(?P<key>[^\s#\-'"][^:#]*?|"[^"]+"|'[^']+')\s*:(?:\s|$)''')
DOCUMENT_MARKER_RE = re.compile(r'^(---|\.\.\.)(\s|$)')


def load_documents(content: str) -> List[Any]:
    try:
        return list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise ParserError(f"Invalid YAML: {e}") from e


def document_ranges(lines: List[str]) -> List[Tuple[int, int]]:
    """Split at ``---`` markers into 1-based inclusive line ranges (markers excluded)."""
    ranges = []
    start = 1
    for index, line in enumerate(lines, start=1):
        if DOCUMENT_MARKER_RE.match(line):
            if index > start:
                ranges.append((start, index - 1))
            start = index + 1
    if start <= len(lines):
        ranges.append((start, len(lines)))
    return [(s, e) for s, e in ranges if any(l.strip() for l in lines[s - 1:e])]


def top_level_keys(lines: List[str], start: int, end: int) -> List[Tuple[str, int]]:
    keys = []
    for line_no in range(start, end + 1):
        match = TOP_LEVEL_KEY_RE.match(lines[line_no - 1])
        if match:
            keys.append((match.group('key').strip('\'"'), line_no))
    return keys


def child_keys(lines: List[str], start: int, end: int) -> List[Tuple[str, int]]:
    """Keys at the first indentation level under the key on line ``start``."""
    keys = []
    child_indent = None
    for line_no in range(start + 1, end + 1):
        match = CHILD_KEY_RE.match(lines[line_no - 1])
        if not match:
            continue
        indent = len(match.group('indent'))
        if child_indent is None:
            child_indent = indent
        if indent == child_indent:
            keys.append((match.group('key').strip('\'"'), line_no))
    return keys


def key_sections(lines: List[str], keys: List[Tuple[str, int]], end: int) -> List[Tuple[str, int, int]]:
    sections = []
    for index, (key, line_no) in enumerate(keys):
        section_end = keys[index + 1][1] - 1 if index + 1 < len(keys) else end
        section_start, section_end = trim_range(lines, line_no, max(section_end, line_no))
        sections.append((key, section_start, section_end))
    return sections


class YAMLParser(LanguageParser):
    language = 'yaml'
    extensions = ('.yaml', '.yml')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        documents = load_documents(content)
        lines = split_lines(content)
        name = strip_extension(basename(source)) or 'yaml-document'
        ranges = document_ranges(lines)
        chunks: List[SemanticChunk] = []

        data_docs = [doc for doc in documents if doc is not None]
        for index, (start, end) in enumerate(ranges):
            doc = data_docs[index] if index < len(data_docs) else None
            if isinstance(doc, dict) and 'apiVersion' in doc and 'kind' in doc:
                chunks.append(self._manifest_chunk(doc, lines, start, end))
            elif isinstance(doc, dict):
                chunks.extend(self._mapping_chunks(doc, lines, start, end))
            else:
                start, end = trim_range(lines, start, end)
                chunk_type = ChunkType.ARRAY_SECTION if isinstance(doc, list) else ChunkType.CONFIG
                chunks.append(self.make_chunk(chunk_type, name, lines, start, end))

        return self.fill_gaps(lines, chunks, ChunkType.CONFIG, name)

    def _manifest_chunk(self, doc: Dict[str, Any], lines: List[str], start: int, end: int) -> SemanticChunk:
        metadata = doc.get('metadata') or {}
        resource_name = metadata.get('name') if isinstance(metadata, dict) else None
        name = f"{doc['kind']}/{resource_name}" if resource_name else str(doc['kind'])
        start, end = trim_range(lines, start, end)
        return self.make_chunk(
            ChunkType.RESOURCE, name, lines, start, end,
            exports=[name],
            extra={'api_version': str(doc['apiVersion'])},
        )

    def _mapping_chunks(self, doc: Dict[str, Any], lines: List[str], start: int, end: int) -> List[SemanticChunk]:
        chunks: List[SemanticChunk] = []
        sections = key_sections(lines, top_level_keys(lines, start, end), end)
        for key, section_start, section_end in sections:
            chunks.append(self.make_chunk(
                ChunkType.CONFIG, key, lines, section_start, section_end,
                exports=[key],
            ))
            value = doc.get(key)
            if key == 'services' and isinstance(value, dict):
                chunks.extend(self._service_chunks(value, lines, section_start, section_end))
        return chunks

    def _service_chunks(self, services: Dict[str, Any], lines: List[str], start: int, end: int) -> List[SemanticChunk]:
        chunks = []
        for name, service_start, service_end in key_sections(lines, child_keys(lines, start, end), end):
            service = services.get(name)
            dependencies: List[str] = []
            if isinstance(service, dict):
                depends_on = service.get('depends_on') or []
                dependencies.extend(depends_on.keys() if isinstance(depends_on, dict) else depends_on)
                if service.get('image'):
                    dependencies.append(str(service['image']))
            chunks.append(self.make_chunk(
                ChunkType.SERVICE, name, lines, service_start, service_end,
                parent='services',
                dependencies=[str(d) for d in dependencies],
                exports=[name],
            ))
        return chunks
