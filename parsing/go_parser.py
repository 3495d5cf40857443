"""Go parser: package clause, imports, type declarations, functions and methods."""

import re
from typing import List, Optional

from .scanning import find_block_end, indentation, mask_code
from .types import ChunkType, LanguageParser, SemanticChunk, Visibility, split_lines

PACKAGE_RE = re.compile(r'^package\s+(\w+)')
IMPORT_RE = re.compile(r'^import\b')
IMPORT_SPEC_RE = re.compile(r'^\s*(?:import\s+)?(?:(?P<alias>[\w.]+)\s+)?"(?P<path>[^"]+)"')
TYPE_RE = re.compile(r'^type\s+(?P<name>\w+)(?:\[[^\]]*\])?\s+(?P<kind>struct|interface)?')
TYPE_GROUP_RE = re.compile(r'^type\s*\(')
FUNC_RE = re.compile(r'^func\s+(?:\((?P<receiver>[^)]*)\)\s*)?(?P<name>\w+)\s*(?:\[[^\]]*\])?\s*\(')
DECL_RE = re.compile(r'^(?P<kind>const|var)\s*(?P<group>\()?\s*(?P<name>\w+)?')
GROUP_MEMBER_RE = re.compile(r'^\s+(\w+)')


def go_visibility(name: str) -> Visibility:
    return Visibility.PUBLIC if name[:1].isupper() else Visibility.PRIVATE


def receiver_type(receiver: str) -> str:
    parts = receiver.replace('*', ' ').split()
    if not parts:
        return ''
    return re.sub(r'\[.*$', '', parts[-1])


class GoParser(LanguageParser):
    language = 'go'
    extensions = ('.go',)

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        masked = mask_code(lines, quotes='"\'`', multiline_quotes='`')
        chunks: List[SemanticChunk] = []

        i = 0
        while i < len(lines):
            if not masked[i].strip() or indentation(masked[i]) > 0:
                i += 1
                continue
            stripped = lines[i].strip()
            end = find_block_end(masked, i)
            chunk = self._declaration(stripped, lines, i, end)
            if chunk is not None:
                chunks.append(chunk)
            i = end + 1

        return self.fill_gaps(lines, chunks)

    def _declaration(self, stripped: str, lines: List[str], start: int, end: int) -> Optional[SemanticChunk]:
        match = PACKAGE_RE.match(stripped)
        if match:
            return self.make_chunk(ChunkType.PACKAGE, match.group(1), lines, start + 1, end + 1,
                                   exports=[match.group(1)])

        if IMPORT_RE.match(stripped):
            imports = []
            for line in lines[start:end + 1]:
                spec = IMPORT_SPEC_RE.match(line)
                if spec:
                    imports.append(spec.group('alias') or spec.group('path').split('/')[-1])
            name = imports[0] if len(imports) == 1 and '(' not in stripped else 'imports'
            return self.make_chunk(ChunkType.IMPORT, name, lines, start + 1, end + 1,
                                   dependencies=imports)

        match = FUNC_RE.match(stripped)
        if match:
            name = match.group('name')
            receiver = match.group('receiver')
            signature = stripped[match.end() - 1:]
            metadata = dict(
                parameters=self._params(signature),
                visibility=go_visibility(name),
                exports=[name] if name[:1].isupper() else [],
            )
            if receiver:
                return self.make_chunk(ChunkType.METHOD, name, lines, start + 1, end + 1,
                                       parent=receiver_type(receiver), **metadata)
            return self.make_chunk(ChunkType.FUNCTION, name, lines, start + 1, end + 1, **metadata)

        if TYPE_GROUP_RE.match(stripped):
            names = [m.group(1) for m in map(GROUP_MEMBER_RE.match, lines[start + 1:end]) if m]
            return self.make_chunk(ChunkType.TYPE, 'types', lines, start + 1, end + 1,
                                   exports=[n for n in names if n[:1].isupper()])

        match = TYPE_RE.match(stripped)
        if match:
            name = match.group('name')
            kind = match.group('kind')
            chunk_type = {'struct': ChunkType.STRUCT, 'interface': ChunkType.INTERFACE}.get(kind, ChunkType.TYPE)
            embedded = []
            if kind:
                for line in lines[start + 1:end]:
                    field = line.strip()
                    if re.fullmatch(r'\*?[\w.]+', field):
                        embedded.append(field.lstrip('*'))
            return self.make_chunk(chunk_type, name, lines, start + 1, end + 1,
                                   dependencies=embedded,
                                   visibility=go_visibility(name),
                                   exports=[name] if name[:1].isupper() else [])

        match = DECL_RE.match(stripped)
        if match:
            kind = match.group('kind')
            if match.group('group'):
                names = [m.group(1) for m in map(GROUP_MEMBER_RE.match, lines[start + 1:end]) if m]
                if match.group('name'):
                    names.insert(0, match.group('name'))
                name = f"{kind}s"
            else:
                names = [match.group('name')] if match.group('name') else []
                name = names[0] if names else kind
            chunk_type = ChunkType.CONSTANT if kind == 'const' else ChunkType.VARIABLE
            return self.make_chunk(chunk_type, name, lines, start + 1, end + 1,
                                   exports=[n for n in names if n[:1].isupper()])
        return None

    @staticmethod
    def _params(signature: str) -> List[str]:
        depth = 0
        inner = ''
        for ch in signature:
            if ch == '(':
                depth += 1
                if depth == 1:
                    continue
            elif ch == ')':
                depth -= 1
                if depth == 0:
                    break
            if depth >= 1:
                inner += ch
        names = []
        for part in inner.split(','):
            tokens = part.strip().split()
            if len(tokens) >= 2:
                names.append(tokens[0])
            elif len(tokens) == 1 and not names:
                # Unnamed parameters: "func(int, string)".
                continue
            elif len(tokens) == 1:
                names.append(tokens[0])
        return names
