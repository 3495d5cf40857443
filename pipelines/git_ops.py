"""Async git working-copy operations used by the indexing engine."""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from config.settings import IndexingConfig
from services.shared.errors import GitCommandError

logger = logging.getLogger(__name__)


@dataclass
class GitDiffResult:
    """Changed paths between two revisions, each in exactly one bucket."""
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    renamed: List[Tuple[str, str]] = field(default_factory=list)

    def all_paths(self) -> List[str]:
        paths = self.added + self.modified + self.deleted
        for old, new in self.renamed:
            paths.extend((old, new))
        return paths

    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted or self.renamed)


def parse_name_status(output: str) -> GitDiffResult:
    """Parse ``git diff --name-status`` output.

    ``R<score>`` lines become renames, ``C<score>`` copies count as additions
    of the destination path; unknown status codes are ignored.
    """
    result = GitDiffResult()
    for line in output.splitlines():
        if not line.strip():
            continue
        status, *paths = line.split('\t')
        if not paths:
            continue
        if status == 'A':
            result.added.append(paths[0])
        elif status == 'M':
            result.modified.append(paths[0])
        elif status == 'D':
            result.deleted.append(paths[0])
        elif status.startswith('R'):
            if len(paths) >= 2:
                result.renamed.append((paths[0], paths[1]))
        elif status.startswith('C'):
            result.added.append(paths[-1])
    return result


async def run_git(args: Sequence[str], cwd: Optional[str] = None, timeout: float = 60.0) -> str:
    """Run ``git *args`` and return stdout; non-zero exit or timeout raises."""
    command = ['git', *args]
    env = dict(os.environ, GIT_TERMINAL_PROMPT='0')
    process = await asyncio.create_subprocess_exec(
        *command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise GitCommandError(command, timed_out=True)

    if process.returncode != 0:
        raise GitCommandError(command, process.returncode, stderr.decode('utf-8', errors='replace'))
    return stdout.decode('utf-8', errors='replace')


async def remote_head(url: str, branch: str, timeout: float = 300.0) -> Optional[str]:
    """Commit the remote ``branch`` points at, or None if it does not exist."""
    output = await run_git(['ls-remote', '--heads', url, branch], timeout=timeout)
    for line in output.splitlines():
        commit, _, ref = line.partition('\t')
        if ref.strip() == f"refs/heads/{branch}":
            return commit.strip()
    return None


class GitWorkingCopy:
    """A checkout on local disk driven through ``git`` subprocesses."""

    def __init__(self, path: str, config: Optional[IndexingConfig] = None):
        self.path = path
        self.config = config or IndexingConfig()

    async def _run(self, args: Sequence[str], timeout: Optional[float] = None, cwd: Optional[str] = None) -> str:
        return await run_git(args, cwd or self.path, timeout or self.config.command_timeout)

    def exists(self) -> bool:
        return os.path.isdir(os.path.join(self.path, '.git'))

    async def clone(self, url: str, depth: Optional[int] = None, branch: Optional[str] = None) -> None:
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)
        self.remove()
        args = ['clone']
        if depth:
            args += ['--depth', str(depth)]
        if branch:
            args += ['--branch', branch]
        args += [url, self.path]
        logger.info(f"Cloning {url} into {self.path}")
        await self._run(args, timeout=self.config.clone_timeout, cwd=parent)

    async def fetch(self) -> None:
        await self._run(['fetch', 'origin'], timeout=self.config.fetch_timeout)

    async def checkout(self, branch: str) -> None:
        await self._run(['checkout', branch], timeout=self.config.checkout_timeout)

    async def pull(self, branch: str) -> None:
        await self._run(['pull', 'origin', branch], timeout=self.config.pull_timeout)

    async def head_commit(self) -> str:
        return (await self._run(['rev-parse', 'HEAD'])).strip()

    async def resolve(self, revision: str) -> str:
        return (await self._run(['rev-parse', revision])).strip()

    async def current_branch(self) -> str:
        return (await self._run(['rev-parse', '--abbrev-ref', 'HEAD'])).strip()

    async def diff(self, from_revision: str, to_revision: str) -> GitDiffResult:
        output = await self._run(['diff', '--name-status', f"{from_revision}..{to_revision}"])
        return parse_name_status(output)

    async def prepare_incremental(self, url: str, branch: str) -> None:
        """Refresh an existing clone, or make a full-history clone of ``url``."""
        if self.exists():
            logger.info(f"Refreshing working copy {self.path}")
            await self.fetch()
            await self.checkout(branch)
            await self.pull(branch)
            return

        await self.clone(url)
        if branch not in ('main', 'master'):
            try:
                await self.checkout(branch)
            except GitCommandError as e:
                logger.warning(f"Failed to checkout branch {branch}, staying on default branch: {e}")

    def remove(self) -> None:
        if os.path.exists(self.path):
            shutil.rmtree(self.path, ignore_errors=True)
