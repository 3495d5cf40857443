"""Ansible parser: plays with nested tasks, task files and variable files."""

import re
from typing import Any, Dict, List, Optional, Tuple

from .types import ChunkType, LanguageParser, SemanticChunk, basename, split_lines, strip_extension, trim_range
from .yaml_parser import key_sections, load_documents, top_level_keys

PATH_HINTS = ('playbook', 'ansible', 'roles/', 'tasks/', 'handlers/')
PLAY_KEYWORDS = ('hosts:', 'gather_facts:', 'remote_user:', 'import_playbook:')
TASK_SECTIONS = ('pre_tasks', 'roles', 'tasks', 'post_tasks', 'handlers')
TASK_KEYWORDS = {
    'name', 'when', 'register', 'notify', 'tags', 'become', 'become_user', 'become_method',
    'with_items', 'with_dict', 'with_fileglob', 'loop', 'loop_control', 'vars', 'ignore_errors',
    'changed_when', 'failed_when', 'delegate_to', 'run_once', 'environment', 'args', 'no_log',
    'until', 'retries', 'delay', 'rescue', 'always', 'listen', 'check_mode', 'diff',
    'any_errors_fatal', 'throttle', 'timeout', 'module_defaults', 'collections', 'connection',
    'async', 'poll',
}
LIST_ITEM_RE = re.compile(r'^(?P<indent>\s*)-(?:\s|$)')


def looks_like_ansible(content: str, path: Optional[str] = None) -> bool:
    """Path hints or play-level keywords mark a YAML file as Ansible."""
    if path and any(hint in path.lower() for hint in PATH_HINTS):
        return True
    lowered = content.lower()
    return any(keyword in lowered for keyword in PLAY_KEYWORDS) and (
        'tasks:' in lowered or 'roles:' in lowered or 'import_playbook:' in lowered
    )


def list_items(lines: List[str], start: int, end: int, indent: Optional[int] = None) -> List[Tuple[int, int]]:
    """Ranges of the sequence items at one indentation inside ``start..end``."""
    starts = []
    for line_no in range(start, end + 1):
        match = LIST_ITEM_RE.match(lines[line_no - 1])
        if not match:
            continue
        item_indent = len(match.group('indent'))
        if indent is None:
            indent = item_indent
        if item_indent == indent:
            starts.append(line_no)
    ranges = []
    for index, item_start in enumerate(starts):
        item_end = starts[index + 1] - 1 if index + 1 < len(starts) else end
        ranges.append(trim_range(lines, item_start, item_end))
    return ranges


def task_module(task: Dict[str, Any]) -> Optional[str]:
    if 'block' in task:
        return 'block'
    for key in task:
        if key not in TASK_KEYWORDS:
            return key
    return None


class AnsibleParser(LanguageParser):
    language = 'ansible'
    extensions = ()

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        documents = [doc for doc in load_documents(content) if doc is not None]
        lines = split_lines(content)
        name = strip_extension(basename(source)) or 'ansible-content'
        if not documents:
            return []

        data = documents[0]
        chunks: List[SemanticChunk] = []
        if isinstance(data, list):
            items = list_items(lines, 1, len(lines), indent=0)
            if any(isinstance(item, dict) and ('hosts' in item or 'import_playbook' in item) for item in data):
                for index, (start, end) in enumerate(items):
                    play = data[index] if index < len(data) and isinstance(data[index], dict) else {}
                    chunks.extend(self._play_chunks(play, index, lines, start, end))
            else:
                for index, (start, end) in enumerate(items):
                    task = data[index] if index < len(data) and isinstance(data[index], dict) else {}
                    chunks.append(self._task_chunk(task, f"task-{index}", lines, start, end, parent=None))
        elif isinstance(data, dict):
            for key, start, end in key_sections(lines, top_level_keys(lines, 1, len(lines)), len(lines)):
                value = data.get(key)
                if key in ('galaxy_info', 'dependencies'):
                    dependencies = []
                    if key == 'dependencies' and isinstance(value, list):
                        dependencies = [
                            d if isinstance(d, str) else str(d.get('role') or d.get('name'))
                            for d in value if d
                        ]
                    chunks.append(self.make_chunk(ChunkType.CONFIG, key, lines, start, end,
                                                  dependencies=dependencies, exports=[key]))
                else:
                    chunks.append(self.make_chunk(ChunkType.VARIABLE, key, lines, start, end, exports=[key]))

        return self.fill_gaps(lines, chunks, ChunkType.CONFIG, name)

    def _play_chunks(self, play: Dict[str, Any], index: int, lines: List[str], start: int, end: int) -> List[SemanticChunk]:
        play_name = str(play.get('name') or f"play-{index}")
        dependencies: List[str] = []
        for role in play.get('roles') or []:
            if isinstance(role, dict):
                role = role.get('role') or role.get('name')
            if role:
                dependencies.append(str(role))
        if play.get('import_playbook'):
            dependencies.append(str(play['import_playbook']))

        chunks = [self.make_chunk(
            ChunkType.PLAY, play_name, lines, start, end,
            dependencies=dependencies,
            exports=[play_name],
            extra={'hosts': play.get('hosts')} if play.get('hosts') is not None else {},
        )]

        for section in TASK_SECTIONS:
            if section == 'roles' or not isinstance(play.get(section), list):
                continue
            header = self._section_header(lines, start, end, section)
            if header is None:
                continue
            header_line, header_indent = header
            section_end = end
            for line_no in range(header_line + 1, end + 1):
                text = lines[line_no - 1]
                stripped = text.lstrip()
                if not stripped or stripped.startswith('#'):
                    continue
                indent = len(text) - len(stripped)
                # Sequence items may sit at the same indentation as their key.
                same_level_item = indent == header_indent and LIST_ITEM_RE.match(stripped)
                if indent < header_indent or (indent == header_indent and not same_level_item):
                    section_end = line_no - 1
                    break
            tasks = play[section]
            for task_index, (task_start, task_end) in enumerate(list_items(lines, header_line + 1, section_end)):
                task = tasks[task_index] if task_index < len(tasks) and isinstance(tasks[task_index], dict) else {}
                chunks.append(self._task_chunk(
                    task, f"{section}-{task_index}", lines, task_start, task_end,
                    parent=play_name, section=section,
                ))
        return chunks

    @staticmethod
    def _section_header(lines: List[str], start: int, end: int, section: str) -> Optional[Tuple[int, int]]:
        pattern = re.compile(r'^(?P<indent>\s*)(?:-\s+)?' + section + r'\s*:\s*$')
        for line_no in range(start, end + 1):
            match = pattern.match(lines[line_no - 1])
            if match:
                return line_no, len(match.group('indent'))
        return None

    def _task_chunk(self, task: Dict[str, Any], default_name: str, lines: List[str], start: int, end: int,
                    parent: Optional[str], section: str = 'tasks') -> SemanticChunk:
        name = str(task.get('name') or default_name)
        dependencies: List[str] = []
        module = task_module(task)
        if module:
            dependencies.append(module)
        notify = task.get('notify') or []
        if isinstance(notify, str):
            notify = [notify]
        dependencies.extend(str(handler) for handler in notify)
        return self.make_chunk(
            ChunkType.TASK, name, lines, start, end,
            parent=parent,
            dependencies=dependencies,
            exports=[str(task['register'])] if task.get('register') else [],
            extra={'section': section, 'module': module},
        )
