"""Markdown parser: heading sections plus nested fenced code blocks."""

import re
from typing import List, Optional, Tuple

from .types import ChunkType, LanguageParser, SemanticChunk, split_lines, trim_range

HEADING_RE = re.compile(r'^ {0,3}(#{1,6})\s+(.+?)\s*#*\s*$')
FENCE_RE = re.compile(r'^ {0,3}(```+|~~~+)\s*([\w+#.-]*)')
LINK_RE = re.compile(r'!?\[[^\]]*\]\(([^)\s]+)(?:\s+"[^"]*")?\)')
REF_LINK_RE = re.compile(r'^\s*\[[^\]]+\]:\s*(\S+)', re.MULTILINE)
ORDERED_RE = re.compile(r'^\d+\.\s')


def extract_links(content: str) -> List[str]:
    links = LINK_RE.findall(content) + REF_LINK_RE.findall(content)
    return list(dict.fromkeys(links))


def section_type(content: str) -> ChunkType:
    trimmed = content.strip()
    if trimmed.startswith('#'):
        return ChunkType.HEADING
    if trimmed.startswith(('```', '~~~')):
        return ChunkType.CODE_BLOCK
    if '|' in trimmed and '---' in trimmed:
        return ChunkType.TABLE
    if trimmed.startswith(('- ', '* ', '+ ')) or ORDERED_RE.match(trimmed):
        return ChunkType.LIST
    if trimmed.startswith('>'):
        return ChunkType.QUOTE
    if '![' in trimmed:
        return ChunkType.IMAGE
    if '[' in trimmed and '](' in trimmed:
        return ChunkType.LINK
    return ChunkType.TEXT


class MarkdownParser(LanguageParser):
    """Splits a document at headings; headings inside fences are ignored."""

    language = 'markdown'
    extensions = ('.md', '.markdown', '.mdown', '.mkd', '.mdx')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        headings, fences = self._scan(lines)

        sections: List[Tuple[int, int, str, int]] = []
        boundaries = [h[0] for h in headings]
        if not boundaries or boundaries[0] > 1:
            sections.append((1, (boundaries[0] - 1) if boundaries else len(lines), 'introduction', 0))
        for index, (line_no, level, title) in enumerate(headings):
            end = boundaries[index + 1] - 1 if index + 1 < len(boundaries) else len(lines)
            sections.append((line_no, end, title, level))

        chunks: List[SemanticChunk] = []
        for start, end, title, level in sections:
            if not any(l.strip() for l in lines[start - 1:end]):
                continue
            start, end = trim_range(lines, start, end)
            section = self.make_chunk(
                ChunkType.TEXT, title, lines, start, end,
                heading_level=level or None,
            )
            section.type = section_type(section.content)
            section.metadata.dependencies = extract_links(section.content)
            chunks.append(section)

            for fence_start, fence_end, code_language in fences:
                if start <= fence_start <= end:
                    chunks.append(self.make_chunk(
                        ChunkType.CODE_BLOCK,
                        f"{code_language}-code-block" if code_language else 'code-block',
                        lines,
                        fence_start,
                        min(fence_end, end),
                        parent=title,
                        code_language=code_language or None,
                    ))
        return chunks

    @staticmethod
    def _scan(lines: List[str]):
        headings: List[Tuple[int, int, str]] = []
        fences: List[Tuple[int, int, str]] = []
        fence_marker = None
        fence_start = 0
        fence_language = ''

        for index, line in enumerate(lines, start=1):
            fence = FENCE_RE.match(line)
            if fence_marker:
                if fence and fence.group(1).startswith(fence_marker) and not fence.group(2):
                    fences.append((fence_start, index, fence_language))
                    fence_marker = None
                continue
            if fence:
                fence_marker = fence.group(1)
                fence_start = index
                fence_language = fence.group(2)
                continue
            heading = HEADING_RE.match(line)
            if heading:
                headings.append((index, len(heading.group(1)), heading.group(2).strip()))

        if fence_marker:
            fences.append((fence_start, len(lines), fence_language))
        return headings, fences
