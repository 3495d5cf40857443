"""Push webhook payload parsing for GitHub, GitLab and Bitbucket."""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

BRANCH_REF_PREFIX = 'refs/heads/'


@dataclass
class WebhookInfo:
    should_index: bool
    platform: str
    event: Optional[str] = None
    reason: Optional[str] = None
    branch: Optional[str] = None
    commit: Optional[str] = None
    author: Optional[str] = None
    repository: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def detect_platform(headers: Mapping[str, str]) -> str:
    if headers.get('x-github-event'):
        return 'github'
    if headers.get('x-gitlab-event'):
        return 'gitlab'
    if headers.get('x-event-key'):
        return 'bitbucket'
    return 'unknown'


def branch_from_ref(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    return ref[len(BRANCH_REF_PREFIX):] if ref.startswith(BRANCH_REF_PREFIX) else ref


def _get(payload: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def _parse_github(event: str, payload: Dict[str, Any]) -> WebhookInfo:
    if event != 'push':
        return WebhookInfo(False, 'github', event, reason=f"GitHub event {event} is not a push event")
    if payload.get('deleted'):
        return WebhookInfo(False, 'github', event, reason='Branch was deleted')
    return WebhookInfo(
        True, 'github', event,
        branch=branch_from_ref(payload.get('ref')),
        commit=_get(payload, 'head_commit', 'id') or payload.get('after'),
        author=_get(payload, 'head_commit', 'author', 'name') or _get(payload, 'pusher', 'name'),
        repository=_get(payload, 'repository', 'full_name'),
    )


def _parse_gitlab(event: str, payload: Dict[str, Any]) -> WebhookInfo:
    if event != 'Push Hook':
        return WebhookInfo(False, 'gitlab', event, reason=f"GitLab event {event} is not a push event")
    return WebhookInfo(
        True, 'gitlab', event,
        branch=branch_from_ref(payload.get('ref')),
        commit=payload.get('checkout_sha'),
        author=payload.get('user_name'),
        repository=_get(payload, 'repository', 'name'),
    )


def _parse_bitbucket(event: str, payload: Dict[str, Any]) -> WebhookInfo:
    if event != 'repo:push':
        return WebhookInfo(False, 'bitbucket', event, reason=f"Bitbucket event {event} is not a push event")
    changes = _get(payload, 'push', 'changes') or []
    if not changes:
        return WebhookInfo(False, 'bitbucket', event, reason='No changes in push')
    new = _get(changes[0], 'new') or {}
    if not new:
        return WebhookInfo(False, 'bitbucket', event, reason='Branch was deleted')
    return WebhookInfo(
        True, 'bitbucket', event,
        branch=new.get('name'),
        commit=_get(new, 'target', 'hash'),
        author=_get(new, 'target', 'author', 'raw'),
        repository=_get(payload, 'repository', 'full_name'),
    )


def parse_push_payload(headers: Mapping[str, str], payload: Any) -> WebhookInfo:
    """Decide from the event headers and body whether a push should trigger indexing."""
    if not isinstance(payload, dict):
        payload = {}

    platform = detect_platform(headers)
    if platform == 'github':
        info = _parse_github(headers.get('x-github-event'), payload)
    elif platform == 'gitlab':
        info = _parse_gitlab(headers.get('x-gitlab-event'), payload)
    elif platform == 'bitbucket':
        info = _parse_bitbucket(headers.get('x-event-key'), payload)
    else:
        info = WebhookInfo(False, 'unknown', reason='Unknown webhook platform')

    if not info.should_index:
        logger.info(f"Ignoring {platform} webhook: {info.reason}")
    return info
