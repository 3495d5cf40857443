"""Tests for git diff parsing and working-copy operations."""

import shutil
import subprocess

import pytest

from pipelines.git_ops import GitWorkingCopy, parse_name_status, run_git
from services.shared.errors import GitCommandError

requires_git = pytest.mark.skipif(shutil.which('git') is None, reason="git not installed")


def git(repo, *args):
    subprocess.run(
        ['git', '-c', 'user.email=dev@example.com', '-c', 'user.name=Dev', *args],
        cwd=repo, check=True, capture_output=True,
    )


def head(repo):
    return subprocess.run(['git', 'rev-parse', 'HEAD'], cwd=repo, check=True,
                          capture_output=True, text=True).stdout.strip()


@pytest.fixture
def origin(tmp_path):
    repo = tmp_path / 'origin'
    repo.mkdir()
    git(repo, 'init', '-q', '-b', 'main')
    (repo / 'x.py').write_text('x = 1\n')
    (repo / 'y.md').write_text('# Y\n')
    (repo / 'old.txt').write_text('old name\n' * 20)
    git(repo, 'add', '.')
    git(repo, 'commit', '-q', '-m', 'initial')
    return repo


class TestParseNameStatus:
    def test_buckets(self):
        output = "A\tz.ts\nM\tx.py\nD\ty.md\nR100\told.txt\tnew.txt\nC75\tsrc.py\tcopy.py\nX\tweird\n\n"
        diff = parse_name_status(output)

        assert diff.added == ['z.ts', 'copy.py']
        assert diff.modified == ['x.py']
        assert diff.deleted == ['y.md']
        assert diff.renamed == [('old.txt', 'new.txt')]
        assert not diff.is_empty()

    def test_empty(self):
        assert parse_name_status('').is_empty()


@requires_git
class TestGitWorkingCopy:
    @pytest.mark.asyncio
    async def test_diff_classifies_changes(self, origin, tmp_path):
        """Adding z.ts, modifying x.py, deleting y.md and renaming old.txt."""
        first = head(origin)
        (origin / 'z.ts').write_text('export const z = 1;\n')
        (origin / 'x.py').write_text('x = 2\n')
        git(origin, 'rm', '-q', 'y.md')
        git(origin, 'mv', 'old.txt', 'new.txt')
        git(origin, 'add', '.')
        git(origin, 'commit', '-q', '-m', 'second')

        working_copy = GitWorkingCopy(str(tmp_path / 'clone'))
        await working_copy.prepare_incremental(str(origin), 'main')
        diff = await working_copy.diff(first, await working_copy.resolve('HEAD'))

        assert diff.added == ['z.ts']
        assert diff.modified == ['x.py']
        assert diff.deleted == ['y.md']
        assert diff.renamed == [('old.txt', 'new.txt')]

    @pytest.mark.asyncio
    async def test_prepare_refreshes_existing_clone(self, origin, tmp_path):
        working_copy = GitWorkingCopy(str(tmp_path / 'clone'))
        await working_copy.prepare_incremental(str(origin), 'main')
        assert working_copy.exists()

        (origin / 'later.py').write_text('later = True\n')
        git(origin, 'add', '.')
        git(origin, 'commit', '-q', '-m', 'later')

        await working_copy.prepare_incremental(str(origin), 'main')
        assert await working_copy.head_commit() == head(origin)
        assert await working_copy.current_branch() == 'main'

    @pytest.mark.asyncio
    async def test_failed_command_raises(self, tmp_path):
        with pytest.raises(GitCommandError) as exc_info:
            await run_git(['rev-parse', 'HEAD'], cwd=str(tmp_path))
        assert exc_info.value.returncode != 0
        assert exc_info.value.command[:2] == ['git', 'rev-parse']
