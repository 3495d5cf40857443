"""Terraform / HCL parser: one chunk per top-level block, or per assignment in ``.tfvars``."""

import re
from typing import List, Optional

from .scanning import find_block_end, indentation, mask_code
from .types import ChunkType, LanguageParser, SemanticChunk, basename, split_lines

BLOCK_RE = re.compile(
    r'^(?P<kind>resource|data|module|provider|variable|output|locals|terraform)'
    r'(?:\s+"(?P<first>[^"]+)")?(?:\s+"(?P<second>[^"]+)")?\s*\{'
)
ASSIGNMENT_RE = re.compile(r'^(?P<name>[\w-]+)\s*=')
REFERENCE_RE = re.compile(r'\b(?:var|local|data|module)\.[\w.-]+')
MODULE_SOURCE_RE = re.compile(r'source\s*=\s*"([^"]+)"')
PROVIDER_RE = re.compile(r'provider\s*=\s*([\w.-]+)')
DEPENDS_ON_RE = re.compile(r'depends_on\s*=\s*\[([^\]]*)\]', re.DOTALL)

BLOCK_TYPES = {
    'resource': ChunkType.RESOURCE,
    'data': ChunkType.RESOURCE,
    'module': ChunkType.MODULE,
    'provider': ChunkType.CONFIG,
    'variable': ChunkType.VARIABLE,
    'output': ChunkType.EXPORT,
    'locals': ChunkType.VARIABLE,
    'terraform': ChunkType.CONFIG,
}


def block_dependencies(kind: str, content: str) -> List[str]:
    dependencies = [ref.rstrip('.') for ref in REFERENCE_RE.findall(content)]
    if kind == 'resource':
        provider = PROVIDER_RE.search(content)
        if provider:
            dependencies.append(f"provider.{provider.group(1)}")
    if kind == 'module':
        source = MODULE_SOURCE_RE.search(content)
        if source:
            dependencies.append(source.group(1))
    depends_on = DEPENDS_ON_RE.search(content)
    if depends_on:
        dependencies.extend(item.strip() for item in depends_on.group(1).split(',') if item.strip())
    return list(dict.fromkeys(dependencies))


class TerraformParser(LanguageParser):
    language = 'terraform'
    extensions = ('.tf', '.tfvars', '.hcl')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        masked = mask_code(lines, line_comments=('#', '//'), quotes='"', multiline_quotes='')
        is_tfvars = basename(source).lower().endswith('.tfvars')
        chunks: List[SemanticChunk] = []

        i = 0
        while i < len(lines):
            if not masked[i].strip() or indentation(masked[i]) > 0:
                i += 1
                continue
            stripped = lines[i].strip()
            end = find_block_end(masked, i)
            block = BLOCK_RE.match(stripped)
            if block and not is_tfvars:
                chunks.append(self._block_chunk(block, lines, i + 1, end + 1))
            else:
                assignment = ASSIGNMENT_RE.match(stripped)
                if assignment:
                    name = assignment.group('name')
                    chunks.append(self.make_chunk(ChunkType.VARIABLE, name, lines, i + 1, end + 1,
                                                  exports=[name]))
            i = end + 1

        return self.fill_gaps(lines, chunks, ChunkType.CONFIG, basename(source) or 'terraform')

    def _block_chunk(self, block, lines: List[str], start: int, end: int) -> SemanticChunk:
        kind = block.group('kind')
        first, second = block.group('first'), block.group('second')
        if kind in ('resource', 'data'):
            name = f"{first}.{second}" if second else (first or kind)
            if kind == 'data':
                name = f"data.{name}"
        else:
            name = first or kind

        chunk = self.make_chunk(BLOCK_TYPES[kind], name, lines, start, end,
                                extra={'block': kind})
        chunk.metadata.dependencies = block_dependencies(kind, chunk.content)
        if kind in ('resource', 'data', 'module', 'variable', 'output'):
            chunk.metadata.exports = [name]
        elif kind == 'locals':
            chunk.metadata.exports = [
                m.group('name') for m in map(ASSIGNMENT_RE.match, (l.strip() for l in lines[start:end - 1])) if m
            ]
        return chunk
