"""Repository permission levels: resolution, ordering and access merging."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

# Most to least privileged.
PERMISSION_ORDER: tuple[str, ...] = ("admin", "maintain", "push", "triage", "pull")

_RANK = {name: len(PERMISSION_ORDER) - idx for idx, name in enumerate(PERMISSION_ORDER)}


def normalize_permission(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def permission_rank(value: Optional[str]) -> int:
    """Higher is more privileged. Unknown non-empty values rank just above empty."""
    normalized = normalize_permission(value)
    if not normalized:
        return -1
    return _RANK.get(normalized, 0)


def resolve_permission(flags: Optional[Mapping[str, bool]]) -> str:
    """Collapse GitHub's ``permissions`` object into its highest true flag."""
    if not flags:
        return ""
    granted = {normalize_permission(k) for k, v in flags.items() if v}
    for level in PERMISSION_ORDER:
        if level in granted:
            return level
    return ""


def max_permission(current: Optional[str], candidate: Optional[str]) -> str:
    """Return the more privileged of two already-resolved permissions."""
    cur = normalize_permission(current)
    cand = normalize_permission(candidate)
    if permission_rank(cand) > permission_rank(cur):
        return cand
    return cur


def merge_repository_access(
    direct_rows: Iterable[tuple[str, str]],
    team_rows: Iterable[tuple[str, str, str, str]],
) -> list[dict]:
    """Combine direct and team-derived access into one entry per repository.

    ``direct_rows`` are ``(repo_name, permission)``; ``team_rows`` are
    ``(repo_name, team_slug, team_name, permission)``. Each entry carries the
    effective permission and the access paths, direct first.
    """
    by_repo: dict[str, dict] = {}

    def merge(repo_name: str, source: str, permission: str) -> None:
        name = (repo_name or "").strip()
        if not name:
            return
        entry = by_repo.setdefault(name, {"repository": name, "permission": "", "access_from": []})
        entry["permission"] = max_permission(entry["permission"], permission)
        display_perm = normalize_permission(permission)
        display = f"{source} [{display_perm}]" if display_perm else source
        if display not in entry["access_from"]:
            entry["access_from"].append(display)

    for repo_name, permission in direct_rows:
        merge(repo_name, "Direct", permission)

    for repo_name, team_slug, team_name, permission in team_rows:
        slug = (team_slug or "").strip()
        if not slug:
            continue
        label = f"Team:{slug}"
        if (team_name or "").strip():
            label = f"{label} ({team_name.strip()})"
        merge(repo_name, label, permission)

    entries = sorted(by_repo.values(), key=lambda e: (e["repository"].lower(), e["repository"]))
    for entry in entries:
        entry["access_from"].sort(key=lambda s: (not s.startswith("Direct"), s))
        if not entry["permission"]:
            entry["permission"] = "-"
    return entries
