"""Which repository files get indexed, and as what."""

import fnmatch
import os
import pathlib
from typing import List, Union

INDEXABLE_EXTENSIONS = frozenset({
    '.ts', '.tsx', '.js', '.jsx', '.py', '.java', '.c', '.cpp', '.h', '.hpp',
    '.go', '.rs', '.rb', '.php', '.swift', '.kt', '.scala', '.cs', '.vb', '.sql',
    '.md', '.txt', '.json', '.yaml', '.yml', '.xml', '.html',
    '.css', '.scss', '.sass', '.less', '.vue', '.svelte', '.dart', '.lua', '.pl',
    '.sh', '.bash', '.zsh', '.fish', '.ps1', '.bat', '.cmd', '.r', '.m',
    '.dockerfile', '.makefile', '.cmake', '.toml', '.ini', '.cfg', '.conf',
})

SKIP_PATTERNS = (
    'node_modules', '.git', '.svn', '.hg', 'dist', 'build', 'target', '.next', '.nuxt',
    '.vscode', '.idea', '__pycache__', '.pytest_cache', 'coverage', '.coverage',
    '.nyc_output', 'logs', '*.log', 'tmp', 'temp', '.DS_Store', 'Thumbs.db',
    '.env', '.env.local', '.env.production',
)

EXTENSION_LANGUAGES = {
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.py': 'python',
    '.java': 'java',
    '.c': 'c',
    '.cpp': 'cpp',
    '.h': 'c',
    '.hpp': 'cpp',
    '.go': 'go',
    '.rs': 'rust',
    '.rb': 'ruby',
    '.php': 'php',
    '.swift': 'swift',
    '.kt': 'kotlin',
    '.scala': 'scala',
    '.cs': 'csharp',
    '.vb': 'vb',
    '.sql': 'sql',
    '.md': 'markdown',
    '.txt': 'text',
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.xml': 'xml',
    '.html': 'html',
    '.css': 'css',
    '.scss': 'scss',
    '.sass': 'sass',
    '.less': 'less',
    '.vue': 'vue',
    '.svelte': 'svelte',
    '.dart': 'dart',
    '.lua': 'lua',
    '.pl': 'perl',
    '.sh': 'bash',
    '.bash': 'bash',
    '.zsh': 'zsh',
    '.fish': 'fish',
    '.ps1': 'powershell',
    '.bat': 'batch',
    '.cmd': 'batch',
    '.r': 'r',
    '.m': 'matlab',
    '.dockerfile': 'dockerfile',
    '.makefile': 'makefile',
    '.cmake': 'cmake',
    '.toml': 'toml',
    '.ini': 'ini',
    '.cfg': 'ini',
    '.conf': 'conf',
}

DOCUMENTATION_LANGUAGES = frozenset({'markdown', 'text', 'html'})
CONFIGURATION_LANGUAGES = frozenset({'json', 'yaml', 'xml', 'toml', 'ini', 'conf'})

PathLike = Union[str, pathlib.Path]


def should_skip(name: str) -> bool:
    """True for skip-listed names and hidden entries other than ``.env``."""
    for pattern in SKIP_PATTERNS:
        if '*' in pattern:
            if fnmatch.fnmatchcase(name, pattern):
                return True
        elif name == pattern:
            return True
    return name.startswith('.') and name != '.env'


def should_index(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in INDEXABLE_EXTENSIONS


def is_indexable_path(relative_path: str) -> bool:
    """Apply the skip list to every path segment and the allow-list to the file name."""
    parts = pathlib.PurePosixPath(relative_path.replace('\\', '/')).parts
    if not parts:
        return False
    return not any(should_skip(part) for part in parts) and should_index(parts[-1])


def scan_files(root: PathLike) -> List[pathlib.Path]:
    """Indexable files under ``root`` in a stable, sorted walk order."""
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not should_skip(d))
        for filename in sorted(filenames):
            if not should_skip(filename) and should_index(filename):
                files.append(pathlib.Path(dirpath) / filename)
    return files


def language_for_path(path: PathLike) -> str:
    return EXTENSION_LANGUAGES.get(os.path.splitext(str(path))[1].lower(), 'text')


def content_type_for_language(language: str) -> str:
    if language in DOCUMENTATION_LANGUAGES:
        return 'documentation'
    if language in CONFIGURATION_LANGUAGES:
        return 'configuration'
    return 'code'
