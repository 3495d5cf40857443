"""CSS / SCSS / Less parser: one chunk per top-level rule or at-rule."""

import re
from typing import List, Optional

from .scanning import find_block_end, mask_code
from .types import ChunkType, LanguageParser, SemanticChunk, basename, split_lines

AT_RULE_RE = re.compile(r'^@([\w-]+)\s*(.*?)\s*[{;]?\s*$')
IMPORT_RE = re.compile(r'''@(?:import|use|forward)\s+(?:url\()?['"]?([^'")\s;]+)''')
URL_RE = re.compile(r'''url\(['"]?([^'")\s]+)['"]?\)''')
VARIABLE_RE = re.compile(r'^([$@][\w-]+)\s*:')
CUSTOM_PROPERTY_RE = re.compile(r'(--[\w-]+)\s*:')

AT_RULE_TYPES = {
    'import': ChunkType.IMPORT,
    'use': ChunkType.IMPORT,
    'forward': ChunkType.IMPORT,
    'keyframes': ChunkType.FUNCTION,
    'counter-style': ChunkType.FUNCTION,
    'mixin': ChunkType.FUNCTION,
    'function': ChunkType.FUNCTION,
}


def css_dependencies(content: str) -> List[str]:
    references = IMPORT_RE.findall(content)
    references.extend(
        url for url in URL_RE.findall(content)
        if not url.startswith(('data:', 'http:', 'https:'))
    )
    return list(dict.fromkeys(references))


class CSSParser(LanguageParser):
    language = 'css'
    extensions = ('.css', '.scss', '.sass', '.less')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        masked = mask_code(lines, line_comments=('//',) if self._allows_line_comments(source) else (),
                           quotes='"\'', multiline_quotes='')
        chunks: List[SemanticChunk] = []

        i = 0
        while i < len(lines):
            if not masked[i].strip():
                i += 1
                continue
            end = find_block_end(masked, i)
            chunks.append(self._rule_chunk(lines, masked, i + 1, end + 1))
            i = end + 1

        return self.fill_gaps(lines, chunks, ChunkType.CONFIG, basename(source) or 'stylesheet')

    @staticmethod
    def _allows_line_comments(source: Optional[str]) -> bool:
        return basename(source).lower().endswith(('.scss', '.sass', '.less'))

    def _rule_chunk(self, lines: List[str], masked: List[str], start: int, end: int) -> SemanticChunk:
        head = masked[start - 1].strip()
        chunk = self.make_chunk(ChunkType.CONFIG, '', lines, start, end)
        chunk.metadata.dependencies = css_dependencies(chunk.content)

        at_rule = AT_RULE_RE.match(head)
        variable = VARIABLE_RE.match(head)
        if at_rule:
            rule, prelude = at_rule.group(1), at_rule.group(2).strip()
            chunk.type = AT_RULE_TYPES.get(rule, ChunkType.CONFIG)
            chunk.name = f"@{rule} {prelude}".strip() if prelude else f"@{rule}"
            if chunk.type is ChunkType.IMPORT:
                chunk.name = f"@{rule}"
            if rule in ('keyframes', 'mixin', 'function') and prelude:
                chunk.metadata.exports = [prelude.split('(')[0].strip()]
        elif variable:
            chunk.type = ChunkType.VARIABLE
            chunk.name = variable.group(1)
            chunk.metadata.exports = [variable.group(1)]
        else:
            selector = ' '.join(' '.join(masked[start - 1:end]).split('{', 1)[0].split())
            chunk.name = selector or 'rule'
            chunk.metadata.exports = CUSTOM_PROPERTY_RE.findall(chunk.content)
        chunk.metadata.extra = {'selector': chunk.name}
        return chunk
