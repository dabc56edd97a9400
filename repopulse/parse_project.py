"""
Parse user input ("owner/repo", "owner/repo.git", GitHub URLs) into owner + project.
"""
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

VALID_NAME = re.compile(r'^[A-Za-z0-9._-]+$')
MAX_NAME_LENGTH = 100

GITHUB_HOSTS = ('github.com', 'www.github.com')


def _is_valid_name(name: str) -> bool:
    return bool(name) and len(name) <= MAX_NAME_LENGTH and bool(VALID_NAME.match(name))


def _strip_suffix(project: str) -> str:
    project = project.rstrip('/')
    if project.endswith('.git'):
        project = project[:-len('.git')]
    return project


def parse_project(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Return (owner, project) for a repository reference, or None.

    Accepts:
        owner/repo
        owner/repo.git
        owner/repo/tree/main          (extra path segments are ignored)
        https://github.com/owner/repo
        github.com/owner/repo
    """
    if not text:
        return None
    trimmed = text.strip()
    if not trimmed:
        return None

    if '://' not in trimmed:
        parts = trimmed.split('/')
        if parts[0].lower() in GITHUB_HOSTS:
            parts = parts[1:]
        if len(parts) >= 2:
            owner, project = parts[0], _strip_suffix(parts[1])
            if _is_valid_name(owner) and _is_valid_name(project):
                return owner, project
        return None

    parsed = urlparse(trimmed)
    if (parsed.hostname or '').lower() not in GITHUB_HOSTS:
        return None
    path_parts = [p for p in parsed.path.split('/') if p]
    if len(path_parts) < 2:
        return None
    owner, project = path_parts[0], _strip_suffix(path_parts[1])
    if _is_valid_name(owner) and _is_valid_name(project):
        return owner, project
    return None
