"""Tests for push webhook parsing."""

import pytest

from server.webhooks import branch_from_ref, detect_platform, parse_push_payload

GITHUB_PUSH = {
    'ref': 'refs/heads/feature/search',
    'after': 'f' * 40,
    'head_commit': {'id': 'a1b2c3d4e5', 'author': {'name': 'Sam'}},
    'pusher': {'name': 'sam-bot'},
    'repository': {'full_name': 'acme/memory'},
}


class TestPlatform:
    @pytest.mark.parametrize("headers,expected", [
        ({'x-github-event': 'push'}, 'github'),
        ({'x-gitlab-event': 'Push Hook'}, 'gitlab'),
        ({'x-event-key': 'repo:push'}, 'bitbucket'),
        ({}, 'unknown'),
    ])
    def test_detect(self, headers, expected):
        assert detect_platform(headers) == expected

    def test_branch_from_ref(self):
        assert branch_from_ref('refs/heads/main') == 'main'
        assert branch_from_ref('refs/heads/feature/x') == 'feature/x'
        assert branch_from_ref(None) is None


class TestGitHub:
    def test_push(self):
        info = parse_push_payload({'x-github-event': 'push'}, GITHUB_PUSH)

        assert info.should_index
        assert info.branch == 'feature/search'
        assert info.commit == 'a1b2c3d4e5'
        assert info.author == 'Sam'
        assert info.repository == 'acme/memory'

    def test_other_events_are_ignored(self):
        info = parse_push_payload({'x-github-event': 'issues'}, {})
        assert not info.should_index
        assert 'not a push event' in info.reason

    def test_branch_deletion_is_ignored(self):
        info = parse_push_payload({'x-github-event': 'push'}, {**GITHUB_PUSH, 'deleted': True})
        assert info.reason == 'Branch was deleted'


class TestGitLab:
    def test_push(self):
        payload = {'ref': 'refs/heads/main', 'checkout_sha': 'abc1234', 'user_name': 'Kim',
                   'repository': {'name': 'memory'}}

        info = parse_push_payload({'x-gitlab-event': 'Push Hook'}, payload)

        assert info.should_index
        assert (info.branch, info.commit, info.author, info.repository) == ('main', 'abc1234', 'Kim', 'memory')


class TestBitbucket:
    def test_push(self):
        payload = {
            'push': {'changes': [{'new': {'name': 'dev', 'target': {'hash': 'beef', 'author': {'raw': 'Lee'}}}}]},
            'repository': {'full_name': 'acme/memory'},
        }

        info = parse_push_payload({'x-event-key': 'repo:push'}, payload)

        assert info.should_index
        assert (info.branch, info.commit, info.author) == ('dev', 'beef', 'Lee')

    def test_empty_push(self):
        info = parse_push_payload({'x-event-key': 'repo:push'}, {'push': {'changes': []}})
        assert info.reason == 'No changes in push'


def test_unknown_platform_and_bad_body():
    info = parse_push_payload({}, ['not', 'a', 'dict'])
    assert not info.should_index
    assert info.platform == 'unknown'
