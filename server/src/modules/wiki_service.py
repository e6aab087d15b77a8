from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Iterable

from server.src.modules.wiki_config import WIKI_ROLES, get_wiki_settings
from server.src.modules.wiki_errors import ValidationError


# [[Name]] or [[Name|Display text]]
WIKI_LINK_RE = re.compile(r"\[\[([^\]|]+)(?:\|[^\]]*)?\]\]")
DEFAULT_SLUG = "page"

PERM_VIEW = "VIEW"
PERM_EDIT = "EDIT"
PERM_DELETE = "DELETE"
PERM_MANAGE_PERMISSIONS = "MANAGE_PERMISSIONS"
PERM_FULL_ACCESS = "FULL_ACCESS"
PERMISSION_TYPES = (PERM_VIEW, PERM_EDIT, PERM_DELETE, PERM_MANAGE_PERMISSIONS, PERM_FULL_ACCESS)

# Stored grant types that satisfy a request for the key type.
GRANTING_TYPES: dict[str, frozenset[str]] = {
    PERM_VIEW: frozenset({PERM_VIEW, PERM_EDIT, PERM_FULL_ACCESS}),
    PERM_EDIT: frozenset({PERM_EDIT, PERM_FULL_ACCESS}),
    PERM_DELETE: frozenset({PERM_DELETE, PERM_FULL_ACCESS}),
    PERM_MANAGE_PERMISSIONS: frozenset({PERM_MANAGE_PERMISSIONS, PERM_FULL_ACCESS}),
    PERM_FULL_ACCESS: frozenset({PERM_FULL_ACCESS}),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_slug(title: str) -> str:
    if not title or not str(title).strip():
        return ""
    decomposed = unicodedata.normalize("NFKD", str(title))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    slug = stripped.lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug or DEFAULT_SLUG


def slug_suffix_pattern(base_slug: str) -> str:
    return f"^{re.escape(base_slug)}(?:-[0-9]+)?$"


def lowest_free_slug(base_slug: str, taken: Iterable[str]) -> str:
    used = set(taken)
    if base_slug not in used:
        return base_slug
    counter = 1
    while f"{base_slug}-{counter}" in used:
        counter += 1
    return f"{base_slug}-{counter}"


def normalize_title(value: Any) -> str:
    title = str(value or "").strip()
    if not title:
        raise ValidationError("Page title is required", field="title")
    max_len = get_wiki_settings().max_title_length
    if len(title) > max_len:
        raise ValidationError(f"Page title is longer than {max_len} characters", field="title")
    return title


def normalize_content(value: Any, is_folder: bool) -> str | None:
    if is_folder or value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("content must be a string", field="content")
    if len(value.encode("utf-8")) > get_wiki_settings().max_content_bytes:
        raise ValidationError("content is too large", field="content")
    return value


def extract_link_names(content: str | None) -> set[str]:
    if not content:
        return set()
    names: set[str] = set()
    for match in WIKI_LINK_RE.finditer(content):
        name = match.group(1).strip()
        if name:
            names.add(name)
    return names


def normalize_permission_type(value: Any) -> str:
    raw = str(value or "").strip().upper()
    if raw not in PERMISSION_TYPES:
        raise ValidationError(f"Invalid permission type: {value!r}", field="permission_type")
    return raw


def normalize_role_name(value: Any) -> str:
    raw = str(value or "").strip().upper()
    if raw.startswith("ROLE_"):
        raw = raw[len("ROLE_"):]
    return raw


def is_predefined_role(value: Any) -> bool:
    return normalize_role_name(value) in WIKI_ROLES


def tree_sort_key(page: dict[str, Any]) -> tuple[bool, str, str]:
    title = str(page.get("title") or "")
    return (not bool(page.get("is_folder")), title.casefold(), title)


def sort_for_tree(pages: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(pages, key=tree_sort_key)


def sort_by_title(pages: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(pages, key=lambda page: str(page.get("title") or "").casefold())
