"""Tests for repository file selection."""

from pipelines.file_filter import (
    content_type_for_language,
    is_indexable_path,
    language_for_path,
    scan_files,
    should_index,
    should_skip,
)


class TestShouldSkip:
    def test_skip_list(self):
        for name in ('node_modules', '.git', 'dist', '__pycache__', 'app.log', 'Thumbs.db'):
            assert should_skip(name), name

    def test_hidden_entries(self):
        assert should_skip('.cache')
        assert should_skip('.env.example')
        assert should_skip('.env')

    def test_regular_names(self):
        assert not should_skip('src')
        assert not should_skip('main.py')


class TestIndexable:
    def test_extension_allow_list(self):
        assert should_index('main.py')
        assert should_index('README.MD')
        assert not should_index('logo.png')
        assert not should_index('Makefile')

    def test_path_segments_checked(self):
        assert is_indexable_path('src/app/main.py')
        assert not is_indexable_path('node_modules/pkg/index.js')
        assert not is_indexable_path('src/.hidden/config.json')
        assert not is_indexable_path('')

    def test_language_and_content_type(self):
        assert language_for_path('a/b.tsx') == 'typescript'
        assert language_for_path('notes.unknown') == 'text'
        assert content_type_for_language('markdown') == 'documentation'
        assert content_type_for_language('yaml') == 'configuration'
        assert content_type_for_language('python') == 'code'


class TestScanFiles:
    def test_walk_is_sorted_and_filtered(self, tmp_path):
        (tmp_path / 'src').mkdir()
        (tmp_path / 'src' / 'b.py').write_text('b = 2\n')
        (tmp_path / 'src' / 'a.py').write_text('a = 1\n')
        (tmp_path / 'node_modules').mkdir()
        (tmp_path / 'node_modules' / 'dep.js').write_text('x')
        (tmp_path / 'image.png').write_bytes(b'\x89PNG')
        (tmp_path / 'README.md').write_text('# Demo\n')

        found = [p.relative_to(tmp_path).as_posix() for p in scan_files(tmp_path)]

        assert found == ['README.md', 'src/a.py', 'src/b.py']
