"""Parser registry and language selection.

Selection is a pure function over the registry: explicit hint, then
extension or exact filename, then filename conventions, then content
sniffing on the first lines. ``parse`` never raises; anything that goes
wrong degrades to a single fallback chunk.
"""

import json
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .ansible_parser import AnsibleParser, PATH_HINTS, looks_like_ansible
from .css_parser import CSSParser
from .dockerfile_parser import DockerfileParser
from .go_parser import GoParser
from .json_parser import JSONParser
from .markdown_parser import MarkdownParser
from .python_parser import PythonParser
from .sql_parser import SQLParser
from .terraform_parser import TerraformParser
from .toml_parser import TOMLParser
from .types import ChunkMetadata, ChunkType, LanguageParser, ParseResult, SemanticChunk, basename, split_lines
from .typescript_parser import JavaScriptParser, TypeScriptParser
from .yaml_parser import YAMLParser

logger = logging.getLogger(__name__)

SNIFF_LINES = 10

LANGUAGE_ALIASES = {
    'py': 'python',
    'ts': 'typescript',
    'tsx': 'typescript',
    'js': 'javascript',
    'jsx': 'javascript',
    'md': 'markdown',
    'yml': 'yaml',
    'golang': 'go',
    'docker': 'dockerfile',
    'tf': 'terraform',
    'hcl': 'terraform',
    'scss': 'css',
    'sass': 'css',
    'less': 'css',
}

PYTHON_PATTERNS = [
    re.compile(r'^#!.*python'),
    re.compile(r'import \w+'),
    re.compile(r'from \w+ import'),
    re.compile(r'def \w+\('),
    re.compile(r'class \w+'),
    re.compile(r'if __name__ == [\'"]__main__[\'"]'),
]
GO_PATTERNS = [
    re.compile(r'package \w+'),
    re.compile(r'import \('),
    re.compile(r'func \w+'),
    re.compile(r'type \w+ struct'),
]
YAML_PATTERNS = [
    re.compile(r'^---', re.MULTILINE),
    re.compile(r'^\w+:\s', re.MULTILINE),
    re.compile(r'^- \w+', re.MULTILINE),
    re.compile(r'apiversion:'),
]
DOCKERFILE_PATTERNS = [
    re.compile(r'^from \S+', re.MULTILINE),
    re.compile(r'^run \w+', re.MULTILINE),
    re.compile(r'^workdir ', re.MULTILINE),
    re.compile(r'^expose \d+', re.MULTILINE),
    re.compile(r'^(?:cmd|entrypoint) \[', re.MULTILINE),
]
TERRAFORM_PATTERNS = [
    re.compile(r'^(?:resource|data|provider|module|variable|output) "', re.MULTILINE),
    re.compile(r'^(?:locals|terraform) \{', re.MULTILINE),
]


class ParserRegistry:
    """Maps language tags to parsers and extensions/filenames to languages."""

    def __init__(self, parsers: Iterable[LanguageParser] = ()):
        self._parsers: Dict[str, LanguageParser] = {}
        self._extensions: Dict[str, str] = {}
        self._filenames: Dict[str, str] = {}
        for parser in parsers:
            self.register(parser)

    def register(self, parser: LanguageParser) -> None:
        self._parsers[parser.language] = parser
        for extension in parser.extensions:
            self._extensions[extension.lower()] = parser.language
        for filename in parser.filenames:
            self._filenames[filename.lower()] = parser.language

    def get(self, language: Optional[str]) -> Optional[LanguageParser]:
        if not language:
            return None
        language = language.lower()
        return self._parsers.get(LANGUAGE_ALIASES.get(language, language))

    def languages(self) -> List[str]:
        return sorted(self._parsers)

    def extensions(self) -> List[str]:
        return sorted(self._extensions)

    def is_extension_supported(self, extension: str) -> bool:
        extension = extension.lower()
        if not extension.startswith('.'):
            extension = f".{extension}"
        return extension in self._extensions

    def language_for_filename(self, path: str) -> Optional[str]:
        name = basename(path).lower()
        if name in self._filenames:
            return self._filenames[name]
        # Longest extension first so ".d.ts"-style suffixes win over ".ts".
        for extension in sorted(self._extensions, key=len, reverse=True):
            if name.endswith(extension):
                return self._extensions[extension]
        return None

    def parse(self, content: str, path: Optional[str] = None, language: Optional[str] = None) -> ParseResult:
        selected = select_language(self, content, path, language)
        parser = self.get(selected)
        if parser is None:
            return fallback_result(content, path, 'No suitable parser found')

        try:
            result = parser.parse(content, path)
        except Exception as e:
            logger.debug(f"{parser.language} parser failed on {path or '<content>'}: {e}")
            return fallback_result(content, path, str(e) or e.__class__.__name__)

        if not result.chunks:
            lines = split_lines(content)
            result.chunks = [SemanticChunk(
                type=ChunkType.DOCUMENT,
                name=basename(path) or 'document',
                content=content,
                start_line=1,
                end_line=len(lines),
                metadata=ChunkMetadata(language=parser.language),
            )]
        return result

    def parse_many(self, files: Iterable[Dict[str, str]]) -> List[Tuple[str, ParseResult]]:
        """Parse ``{'content', 'path', 'language'}`` dicts; returns ``(path, result)`` pairs."""
        results = []
        for item in files:
            path = item.get('path') or item.get('source') or ''
            results.append((path, self.parse(item.get('content', ''), path, item.get('language'))))
        return results


def select_language(
    registry: ParserRegistry,
    content: str,
    path: Optional[str] = None,
    language: Optional[str] = None,
) -> Optional[str]:
    """Pick the language tag a piece of content should be parsed as."""
    if language and registry.get(language):
        return registry.get(language).language

    if path:
        by_name = registry.language_for_filename(path)
        if by_name == 'yaml' and looks_like_ansible(content, path) and registry.get('ansible'):
            return 'ansible'
        if by_name:
            return by_name

        by_pattern = _language_from_path_pattern(path)
        if by_pattern and registry.get(by_pattern):
            return by_pattern

    sniffed = _language_from_content(content, path)
    if sniffed and registry.get(sniffed):
        return sniffed
    return None


def _language_from_path_pattern(path: str) -> Optional[str]:
    lowered = path.lower().replace('\\', '/')
    name = basename(lowered)
    if 'dockerfile' in name or '.dockerfile' in lowered or name == 'containerfile':
        return 'dockerfile'
    if any(hint in lowered for hint in PATH_HINTS):
        return 'ansible'
    if '.tfvars' in lowered or lowered.endswith('.tf'):
        return 'terraform'
    return None


def _language_from_content(content: str, path: Optional[str]) -> Optional[str]:
    head = '\n'.join(split_lines(content)[:SNIFF_LINES]).lower()
    if any(p.search(head) for p in PYTHON_PATTERNS):
        return 'python'
    if any(p.search(head) for p in GO_PATTERNS):
        return 'go'
    if _is_json(content):
        return 'json'
    if any(p.search(head) for p in YAML_PATTERNS):
        return 'ansible' if looks_like_ansible(content, path) else 'yaml'
    if any(p.search(head) for p in DOCKERFILE_PATTERNS):
        return 'dockerfile'
    if any(p.search(head) for p in TERRAFORM_PATTERNS):
        return 'terraform'
    return None


def _is_json(content: str) -> bool:
    trimmed = content.strip()
    if not trimmed.startswith(('{', '[')):
        return False
    try:
        json.loads(trimmed)
    except ValueError:
        return False
    return True


def fallback_result(content: str, path: Optional[str], error: str) -> ParseResult:
    lines = split_lines(content)
    chunk = SemanticChunk(
        type=ChunkType.CONFIG,
        name=basename(path) or 'unknown-content',
        content=content,
        start_line=1,
        end_line=len(lines),
        metadata=ChunkMetadata(language='text'),
    )
    return ParseResult(
        success=False,
        chunks=[chunk],
        error=error,
        fallback_used=True,
        language='text',
    )


def build_default_registry() -> ParserRegistry:
    return ParserRegistry([
        TypeScriptParser(),
        JavaScriptParser(),
        MarkdownParser(),
        CSSParser(),
        JSONParser(),
        YAMLParser(),
        AnsibleParser(),
        PythonParser(),
        GoParser(),
        DockerfileParser(),
        TerraformParser(),
        TOMLParser(),
        SQLParser(),
    ])


default_registry = build_default_registry()


def parse(content: str, path: Optional[str] = None, language: Optional[str] = None) -> ParseResult:
    return default_registry.parse(content, path, language)


def parse_many(files: Iterable[Dict[str, str]]) -> List[Tuple[str, ParseResult]]:
    return default_registry.parse_many(files)
