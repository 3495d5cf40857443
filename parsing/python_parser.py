"""Python parser built on the standard library ``ast`` module."""

import ast
import logging
from typing import List, Optional

from .types import (
    ChunkType,
    LanguageParser,
    ParserError,
    SemanticChunk,
    split_lines,
    visibility_from_name,
    Visibility,
)

logger = logging.getLogger(__name__)

FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)
IMPORT_NODES = (ast.Import, ast.ImportFrom)
STATIC_DECORATORS = {'staticmethod', 'classmethod'}


def _decorator_name(node: ast.expr) -> str:
    if isinstance(node, ast.Call):
        node = node.func
    return ast.unparse(node)


def _node_start(node: ast.AST) -> int:
    decorators = getattr(node, 'decorator_list', None) or []
    return min([node.lineno] + [d.lineno for d in decorators])


def _parameters(args: ast.arguments, drop_receiver: bool = False) -> List[str]:
    names = [a.arg for a in args.posonlyargs + args.args]
    if drop_receiver and names and names[0] in ('self', 'cls'):
        names = names[1:]
    if args.vararg:
        names.append(f"*{args.vararg.arg}")
    names.extend(a.arg for a in args.kwonlyargs)
    if args.kwarg:
        names.append(f"**{args.kwarg.arg}")
    return names


def _import_dependencies(node: ast.stmt) -> List[str]:
    if isinstance(node, ast.Import):
        return [alias.name for alias in node.names]
    module = node.module or ''
    return ['.' * node.level + module]


def _assigned_names(node: ast.stmt) -> List[str]:
    if isinstance(node, ast.Assign):
        targets = node.targets
    elif isinstance(node, ast.AnnAssign):
        targets = [node.target]
    else:
        return []
    names = []
    for target in targets:
        if isinstance(target, ast.Name):
            names.append(target.id)
        elif isinstance(target, (ast.Tuple, ast.List)):
            names.extend(elt.id for elt in target.elts if isinstance(elt, ast.Name))
    return names


class PythonParser(LanguageParser):
    """Chunks Python modules into imports, functions, classes, methods and variables."""

    language = 'python'
    extensions = ('.py', '.pyi', '.pyw')

    def parse_chunks(self, content: str, source: Optional[str] = None) -> List[SemanticChunk]:
        try:
            tree = ast.parse(content)
        except (SyntaxError, ValueError) as e:
            line = getattr(e, 'lineno', None)
            where = f" at line {line}" if line else ""
            raise ParserError(f"Python syntax error{where}: {e}") from e

        lines = split_lines(content)
        chunks: List[SemanticChunk] = []
        pending_imports: List[ast.stmt] = []

        def flush_imports():
            if not pending_imports:
                return
            dependencies = []
            for node in pending_imports:
                dependencies.extend(_import_dependencies(node))
            self._append(chunks, self.make_chunk(
                ChunkType.IMPORT,
                'imports',
                lines,
                pending_imports[0].lineno,
                pending_imports[-1].end_lineno,
                dependencies=dependencies,
            ), lines)
            pending_imports.clear()

        for node in tree.body:
            if isinstance(node, IMPORT_NODES):
                pending_imports.append(node)
                continue
            flush_imports()

            if isinstance(node, FUNCTION_NODES):
                self._append(chunks, self._function_chunk(node, lines), lines)
            elif isinstance(node, ast.ClassDef):
                class_chunk = self._class_chunk(node, lines)
                if self._append(chunks, class_chunk, lines):
                    chunks.extend(self._method_chunks(node, lines))
            elif isinstance(node, (ast.Assign, ast.AnnAssign)):
                names = _assigned_names(node)
                if names:
                    self._append(chunks, self._variable_chunk(node, names, lines), lines)

        flush_imports()
        return self.fill_gaps(lines, chunks)

    def _append(self, chunks: List[SemanticChunk], chunk: SemanticChunk, lines: List[str]) -> bool:
        """Append a top-level chunk, folding it into the previous one on shared lines."""
        top_level = [c for c in chunks if c.metadata.parent is None]
        if top_level and chunk.start_line <= top_level[-1].end_line:
            previous = top_level[-1]
            previous.end_line = max(previous.end_line, chunk.end_line)
            previous.content = '\n'.join(lines[previous.start_line - 1:previous.end_line])
            return False
        chunks.append(chunk)
        return True

    def _function_chunk(self, node: ast.AST, lines: List[str]) -> SemanticChunk:
        visibility = visibility_from_name(node.name)
        return self.make_chunk(
            ChunkType.FUNCTION,
            node.name,
            lines,
            _node_start(node),
            node.end_lineno,
            parameters=_parameters(node.args),
            decorators=[_decorator_name(d) for d in node.decorator_list],
            return_type=ast.unparse(node.returns) if node.returns else None,
            visibility=visibility,
            is_async=isinstance(node, ast.AsyncFunctionDef),
            exports=[node.name] if visibility == Visibility.PUBLIC else [],
        )

    def _class_chunk(self, node: ast.ClassDef, lines: List[str]) -> SemanticChunk:
        decorators = [_decorator_name(d) for d in node.decorator_list]
        bases = [ast.unparse(base) for base in node.bases]
        visibility = visibility_from_name(node.name)
        return self.make_chunk(
            ChunkType.CLASS,
            node.name,
            lines,
            _node_start(node),
            node.end_lineno,
            dependencies=bases,
            decorators=decorators,
            visibility=visibility,
            is_abstract=any(b in ('ABC', 'abc.ABC') for b in bases),
            exports=[node.name] if visibility == Visibility.PUBLIC else [],
        )

    def _method_chunks(self, node: ast.ClassDef, lines: List[str]) -> List[SemanticChunk]:
        methods = []
        for child in node.body:
            if not isinstance(child, FUNCTION_NODES):
                continue
            decorators = [_decorator_name(d) for d in child.decorator_list]
            is_static = any(d in STATIC_DECORATORS for d in decorators)
            methods.append(self.make_chunk(
                ChunkType.METHOD,
                child.name,
                lines,
                _node_start(child),
                child.end_lineno,
                parent=node.name,
                parameters=_parameters(child.args, drop_receiver=True),
                decorators=decorators,
                return_type=ast.unparse(child.returns) if child.returns else None,
                visibility=visibility_from_name(child.name),
                is_async=isinstance(child, ast.AsyncFunctionDef),
                is_static=is_static,
                is_abstract=any(d.endswith('abstractmethod') for d in decorators),
            ))
        return methods

    def _variable_chunk(self, node: ast.stmt, names: List[str], lines: List[str]) -> SemanticChunk:
        name = names[0]
        chunk_type = ChunkType.CONSTANT if name.isupper() else ChunkType.VARIABLE
        return self.make_chunk(
            chunk_type,
            ', '.join(names),
            lines,
            node.lineno,
            node.end_lineno,
            visibility=visibility_from_name(name),
            exports=[n for n in names if not n.startswith('_')],
        )
