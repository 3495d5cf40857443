"""TypeScript and JavaScript parser.

A line-oriented state machine: top-level declarations are recognised by
regex at column zero and their extent is found by bracket matching over
lines whose strings and comments have been masked out.
"""

import re
from typing import List, Optional, Tuple

from .scanning import bracket_delta, find_block_end, indentation, mask_code
from .types import ChunkType, LanguageParser, SemanticChunk, Visibility, split_lines

EXPORT_PREFIX = r'^(?P<export>export\s+(?:default\s+)?)?(?:declare\s+)?'

IMPORT_RE = re.compile(r'^import\b|^(?:const|let|var)\s+[\w{},\s]+=\s*require\(')
REEXPORT_RE = re.compile(r'^export\s+(?:\*|\{[^}]*\}|type\s+\{)')
FUNCTION_RE = re.compile(EXPORT_PREFIX + r'(?P<async>async\s+)?function\s*\*?\s*(?P<name>[\w$]+)?')
CLASS_RE = re.compile(
    EXPORT_PREFIX + r'(?P<abstract>abstract\s+)?class\s+(?P<name>[\w$]+)?'
    r'(?:\s*<[^>]*>)?(?:\s+extends\s+(?P<extends>[\w$.]+))?(?:[^{]*?implements\s+(?P<implements>[\w$.,\s]+))?'
)
INTERFACE_RE = re.compile(EXPORT_PREFIX + r'interface\s+(?P<name>[\w$]+)(?:\s*<[^>]*>)?(?:\s+extends\s+(?P<extends>[^{]+))?')
TYPE_RE = re.compile(EXPORT_PREFIX + r'type\s+(?P<name>[\w$]+)')
ENUM_RE = re.compile(EXPORT_PREFIX + r'(?:const\s+)?enum\s+(?P<name>[\w$]+)')
ARROW_RE = re.compile(
    EXPORT_PREFIX + r'(?:const|let|var)\s+(?P<name>[\w$]+)\s*(?::[^=]+)?=\s*(?P<async>async\s+)?'
    r'(?:function\b|(?:<[^>]*>\s*)?(?:\([^)]*\)|[\w$]+)\s*(?::\s*[^=]+)?=>|\($)'
)
VARIABLE_RE = re.compile(EXPORT_PREFIX + r'(?P<kind>const|let|var)\s+(?P<name>[\w$]+|\{[^}]*\}|\[[^\]]*\])')
DEFAULT_EXPORT_RE = re.compile(r'^export\s+default\b|^module\.exports\b|^exports\.[\w$]+\s*=')

METHOD_RE = re.compile(
    r'^\s*(?P<modifiers>(?:(?:public|private|protected|static|async|readonly|abstract|override|get|set)\s+)*)'
    r'\*?\s*(?P<name>#?[\w$]+)\s*(?:<[^>]*>)?\s*\('
)
PROPERTY_ARROW_RE = re.compile(
    r'^\s*(?P<modifiers>(?:(?:public|private|protected|static|readonly)\s+)*)'
    r'(?P<name>#?[\w$]+)\s*(?::[^=]+)?=\s*(?P<async>async\s+)?(?:\([^)]*\)|[\w$]+)\s*(?::\s*[^=]+)?=>'
)
NOT_METHODS = {'if', 'for', 'while', 'switch', 'return', 'catch', 'function', 'with', 'super', 'new', 'typeof'}

MODULE_SPEC_RE = re.compile(r'''(?:from\s+|import\s+|require\()\s*['"]([^'"]+)['"]''')


def _param_names(signature: str) -> List[str]:
    """Extract parameter names from the first parenthesised list."""
    start = signature.find('(')
    if start == -1:
        return []
    depth = 0
    end = len(signature)
    for i in range(start, len(signature)):
        if signature[i] in '([{<':
            depth += 1
        elif signature[i] in ')]}>':
            depth -= 1
            if depth == 0:
                end = i
                break
    inner = signature[start + 1:end]

    params, current, depth = [], '', 0
    for ch in inner:
        if ch in '([{<':
            depth += 1
        elif ch in ')]}>':
            depth -= 1
        if ch == ',' and depth == 0:
            params.append(current)
            current = ''
        else:
            current += ch
    params.append(current)

    names = []
    for param in params:
        param = param.strip()
        if not param:
            continue
        param = re.sub(r'^(?:public|private|protected|readonly)\s+', '', param)
        name = re.split(r'[?:=]', param, maxsplit=1)[0].strip()
        if name and name != 'this':
            names.append(name)
    return names


class TypeScriptParser(LanguageParser):
    """Chunks TypeScript sources into imports, declarations and class members."""

    language = 'typescript'
    extensions = ('.ts', '.tsx', '.mts', '.cts')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        masked = mask_code(lines)
        chunks: List[SemanticChunk] = []

        i = 0
        import_start: Optional[int] = None
        import_end = 0
        dependencies: List[str] = []

        def flush_imports():
            nonlocal import_start
            if import_start is not None:
                chunks.append(self.make_chunk(
                    ChunkType.IMPORT, 'imports', lines, import_start + 1, import_end + 1,
                    dependencies=list(dependencies),
                ))
                dependencies.clear()
                import_start = None

        while i < len(lines):
            line = lines[i]
            if not masked[i].strip() or indentation(masked[i]) > 0:
                i += 1
                continue

            stripped = line.strip()
            end = find_block_end(masked, i)

            if IMPORT_RE.match(stripped):
                if import_start is None:
                    import_start = i
                import_end = end
                statement = '\n'.join(lines[i:end + 1])
                dependencies.extend(MODULE_SPEC_RE.findall(statement))
                i = end + 1
                continue

            flush_imports()
            declaration = self._declaration(stripped, lines, i, end)
            if declaration:
                chunk_type, name, metadata = declaration
                chunks.append(self.make_chunk(chunk_type, name, lines, i + 1, end + 1, **metadata))
                if chunk_type == ChunkType.CLASS:
                    chunks.extend(self._method_chunks(lines, masked, i, end, name))
            i = end + 1

        flush_imports()
        return self.fill_gaps(lines, chunks)

    def _declaration(self, stripped: str, lines: List[str], start: int, end: int) -> Optional[Tuple[ChunkType, str, dict]]:
        header = ' '.join(l.strip() for l in lines[start:min(end, start + 5) + 1])

        if REEXPORT_RE.match(stripped):
            return ChunkType.EXPORT, 'exports', {
                'dependencies': MODULE_SPEC_RE.findall(header),
                'exported': True,
            }

        match = FUNCTION_RE.match(stripped)
        if match:
            name = match.group('name') or 'default'
            return ChunkType.FUNCTION, name, {
                'parameters': _param_names(header[header.find('function'):]),
                'is_async': bool(match.group('async')),
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        match = CLASS_RE.match(stripped)
        if match:
            name = match.group('name') or 'default'
            dependencies = []
            if match.group('extends'):
                dependencies.append(match.group('extends'))
            if match.group('implements'):
                dependencies.extend(n.strip() for n in match.group('implements').split(',') if n.strip())
            return ChunkType.CLASS, name, {
                'dependencies': dependencies,
                'is_abstract': bool(match.group('abstract')),
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        match = INTERFACE_RE.match(stripped)
        if match:
            name = match.group('name')
            extends = match.group('extends') or ''
            return ChunkType.INTERFACE, name, {
                'dependencies': [n.strip() for n in extends.split(',') if n.strip()],
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        match = ENUM_RE.match(stripped)
        if match:
            name = match.group('name')
            return ChunkType.ENUM, name, {
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        match = TYPE_RE.match(stripped)
        if match:
            name = match.group('name')
            return ChunkType.TYPE, name, {
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        match = ARROW_RE.match(stripped)
        if match:
            name = match.group('name')
            return ChunkType.FUNCTION, name, {
                'parameters': _param_names(header[header.find('=') + 1:]),
                'is_async': bool(match.group('async')),
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        match = VARIABLE_RE.match(stripped)
        if match:
            name = match.group('name')
            is_constant = match.group('kind') == 'const' and name.isupper()
            return (ChunkType.CONSTANT if is_constant else ChunkType.VARIABLE), name, {
                'exported': bool(match.group('export')),
                'exports': [name] if match.group('export') else [],
            }

        if DEFAULT_EXPORT_RE.match(stripped):
            return ChunkType.EXPORT, 'default', {'exported': True}

        return None

    def _method_chunks(self, lines: List[str], masked: List[str], start: int, end: int, class_name: str) -> List[SemanticChunk]:
        methods: List[SemanticChunk] = []
        depth = 0
        j = start
        while j <= end:
            depth += bracket_delta(masked[j])
            j += 1
            if depth > 0:
                break

        while j < end:
            if depth == 1 and masked[j].strip():
                member = self._method(lines[j])
                if member:
                    name, modifiers, is_async = member
                    member_end = min(find_block_end(masked, j), end - 1 if end - 1 >= j else j)
                    visibility = Visibility.PUBLIC
                    if 'private' in modifiers or name.startswith('#'):
                        visibility = Visibility.PRIVATE
                    elif 'protected' in modifiers:
                        visibility = Visibility.PROTECTED
                    methods.append(self.make_chunk(
                        ChunkType.METHOD, name, lines, j + 1, member_end + 1,
                        parent=class_name,
                        parameters=_param_names(lines[j][lines[j].find(name) + len(name):]),
                        visibility=visibility,
                        is_async=is_async,
                        is_static='static' in modifiers,
                        is_abstract='abstract' in modifiers,
                    ))
                    for k in range(j, member_end + 1):
                        depth += bracket_delta(masked[k])
                    j = member_end + 1
                    continue
            depth += bracket_delta(masked[j])
            j += 1
        return methods

    @staticmethod
    def _method(line: str) -> Optional[Tuple[str, List[str], bool]]:
        match = PROPERTY_ARROW_RE.match(line)
        if match:
            modifiers = match.group('modifiers').split()
            return match.group('name'), modifiers, bool(match.group('async'))
        match = METHOD_RE.match(line)
        if match and match.group('name') not in NOT_METHODS:
            modifiers = match.group('modifiers').split()
            return match.group('name'), modifiers, 'async' in modifiers
        return None


class JavaScriptParser(TypeScriptParser):
    language = 'javascript'
    extensions = ('.js', '.jsx', '.mjs', '.cjs')
