"""Dockerfile parser.

Multi-stage builds become one ``stage`` chunk per ``FROM`` with the stage's
instruction groups nested under it. Single-stage files are chunked by
instruction group only. Consecutive RUN/ENV/ARG/LABEL/EXPOSE instructions of
the same kind are grouped; FROM, WORKDIR, USER, ENTRYPOINT and CMD always
start a new group.
"""

import re
from typing import Dict, List, Optional, Tuple

from .types import ChunkType, LanguageParser, SemanticChunk, basename, split_lines, trim_range

INSTRUCTION_RE = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$')
FROM_RE = re.compile(r'^FROM\s+(?:--platform=\S+\s+)?([\w.:/@${}-]+)(?:\s+AS\s+([\w.-]+))?', re.IGNORECASE)
COPY_FROM_RE = re.compile(r'--from=([\w.-]+)')

ALWAYS_NEW_GROUP = {'FROM', 'WORKDIR', 'USER', 'ENTRYPOINT', 'CMD'}
GROUPABLE = {'RUN', 'ENV', 'ARG', 'LABEL', 'EXPOSE'}

GROUP_NAMES = {
    'ENV': 'environment',
    'ARG': 'arguments',
    'LABEL': 'labels',
    'EXPOSE': 'ports',
    'VOLUME': 'volumes',
    'WORKDIR': 'workdir',
    'USER': 'user',
    'COPY': 'files',
    'ADD': 'files',
    'RUN': 'commands',
    'CMD': 'cmd',
    'ENTRYPOINT': 'entrypoint',
}

GROUP_TYPES = {
    'FROM': ChunkType.CONFIG,
    'LABEL': ChunkType.CONFIG,
    'WORKDIR': ChunkType.CONFIG,
    'USER': ChunkType.CONFIG,
    'ENV': ChunkType.VARIABLE,
    'ARG': ChunkType.VARIABLE,
    'EXPOSE': ChunkType.RESOURCE,
    'VOLUME': ChunkType.RESOURCE,
}


class Instruction:
    __slots__ = ('keyword', 'start', 'end', 'dependencies', 'exports')

    def __init__(self, keyword: str, start: int, end: int, dependencies: List[str], exports: List[str]):
        self.keyword = keyword
        self.start = start
        self.end = end
        self.dependencies = dependencies
        self.exports = exports


def should_start_new_group(current: str, new: str) -> bool:
    if new in ALWAYS_NEW_GROUP:
        return True
    if current in GROUPABLE and new in GROUPABLE:
        return current != new
    return True


def env_names(args: str) -> List[str]:
    if '=' in args:
        return [pair.split('=', 1)[0].strip() for pair in re.split(r'\s+(?=\w+=)', args.strip()) if pair]
    parts = args.split()
    return [parts[0]] if len(parts) >= 2 else []


def label_names(args: str) -> List[str]:
    if '=' not in args:
        return []
    pairs = re.split(r'\s+(?=[\w."-]+=)', args.strip())
    return [pair.split('=', 1)[0].strip().replace('"', '') for pair in pairs if '=' in pair]


def read_instructions(lines: List[str]) -> List[Instruction]:
    """Logical instructions with backslash continuations folded in."""
    instructions = []
    i = 0
    while i < len(lines):
        stripped = lines[i].strip()
        if not stripped or stripped.startswith('#'):
            i += 1
            continue
        start = i
        text = stripped
        while text.endswith('\\') and i + 1 < len(lines):
            i += 1
            following = lines[i].strip()
            if following.startswith('#'):
                continue
            text = text[:-1] + ' ' + following
        match = INSTRUCTION_RE.match(text)
        if match:
            keyword = match.group(1).upper()
            args = match.group(2)
            dependencies: List[str] = []
            exports: List[str] = []
            if keyword == 'FROM':
                from_match = FROM_RE.match(text)
                if from_match:
                    dependencies.append(from_match.group(1))
                    if from_match.group(2):
                        exports.append(from_match.group(2))
            elif keyword in ('COPY', 'ADD'):
                copy_match = COPY_FROM_RE.search(args)
                if copy_match:
                    dependencies.append(copy_match.group(1))
            elif keyword == 'ENV':
                exports.extend(env_names(args))
            elif keyword == 'ARG':
                exports.append(args.split('=', 1)[0].strip())
            elif keyword == 'LABEL':
                exports.extend(label_names(args))
            instructions.append(Instruction(keyword, start + 1, i + 1, dependencies, exports))
        i += 1
    return instructions


class DockerfileParser(LanguageParser):
    language = 'dockerfile'
    extensions = ('.dockerfile',)
    filenames = ('dockerfile', 'containerfile')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        lines = split_lines(content)
        instructions = read_instructions(lines)
        name = basename(source) or 'dockerfile'
        if not instructions:
            start, end = trim_range(lines, 1, len(lines))
            return [self.make_chunk(ChunkType.CONFIG, name, lines, start, end)]

        stages = self._stages(instructions)
        if len(stages) > 1:
            chunks = self._stage_chunks(lines, stages)
        else:
            chunks = self._group_chunks(lines, instructions)
        return self.fill_gaps(lines, chunks, ChunkType.CONFIG, name)

    @staticmethod
    def _stages(instructions: List[Instruction]) -> List[List[Instruction]]:
        stages: List[List[Instruction]] = []
        for instruction in instructions:
            if instruction.keyword == 'FROM':
                stages.append([instruction])
            elif stages:
                stages[-1].append(instruction)
        return stages

    def _stage_chunks(self, lines: List[str], stages: List[List[Instruction]]) -> List[SemanticChunk]:
        chunks = []
        for index, stage in enumerate(stages):
            head = stage[0]
            stage_name = head.exports[0] if head.exports else f"stage-{index}"
            end = stages[index + 1][0].start - 1 if index + 1 < len(stages) else len(lines)
            start, end = trim_range(lines, head.start, end)
            dependencies = [dep for instruction in stage for dep in instruction.dependencies
                            if instruction.keyword in ('FROM', 'COPY', 'ADD')]
            chunks.append(self.make_chunk(
                ChunkType.STAGE, stage_name, lines, start, end,
                dependencies=list(dict.fromkeys(dependencies)),
                exports=[stage_name],
            ))
            chunks.extend(self._group_chunks(lines, stage, parent=stage_name))
        return chunks

    def _group_chunks(self, lines: List[str], instructions: List[Instruction],
                      parent: Optional[str] = None) -> List[SemanticChunk]:
        groups: List[Tuple[str, List[Instruction]]] = []
        for instruction in instructions:
            if not groups or should_start_new_group(groups[-1][0], instruction.keyword):
                groups.append((instruction.keyword, [instruction]))
            else:
                groups[-1][1].append(instruction)

        chunks = []
        for keyword, members in groups:
            exports = [e for m in members for e in m.exports]
            dependencies = [d for m in members for d in m.dependencies]
            if keyword == 'FROM':
                group_name = exports[0] if exports else 'base-image'
            else:
                group_name = GROUP_NAMES.get(keyword, keyword.lower())
            if parent:
                group_name = f"{parent}-{group_name}"
            metadata: Dict = dict(dependencies=dependencies, exports=exports, extra={'instruction': keyword})
            chunks.append(self.make_chunk(
                GROUP_TYPES.get(keyword, ChunkType.INSTRUCTION), group_name, lines,
                members[0].start, members[-1].end, parent=parent, **metadata,
            ))
        return chunks
