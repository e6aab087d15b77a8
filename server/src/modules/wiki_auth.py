from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from server.src.modules.wiki_config import ROLE_ADMIN
from server.src.modules.wiki_repo import WikiMongoRepo
from server.src.modules.wiki_service import normalize_role_name


@dataclass(frozen=True)
class Requester:
    """The caller of a core operation, as reported by the identity collaborator."""

    user_id: str | None = None
    username: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)
    enabled: bool = True
    locked: bool = False

    @property
    def is_authenticated(self) -> bool:
        return bool(self.username) and self.enabled and not self.locked

    @property
    def is_admin(self) -> bool:
        return self.is_authenticated and ROLE_ADMIN in self.roles

    def has_role(self, name: str) -> bool:
        return normalize_role_name(name) in self.roles


ANONYMOUS = Requester()


def make_requester(
    username: str | None,
    roles: Iterable[str] = (),
    *,
    user_id: str | None = None,
    enabled: bool = True,
    locked: bool = False,
) -> Requester:
    return Requester(
        user_id=user_id,
        username=(str(username).strip() or None) if username else None,
        roles=frozenset(normalize_role_name(role) for role in roles if normalize_role_name(role)),
        enabled=bool(enabled),
        locked=bool(locked),
    )


def requester_from_user(user_doc: dict[str, Any] | None) -> Requester:
    if not isinstance(user_doc, dict) or not user_doc.get("username"):
        return ANONYMOUS
    return make_requester(
        user_doc.get("username"),
        user_doc.get("roles") or (),
        user_id=str(user_doc.get("id") or "") or None,
        enabled=bool(user_doc.get("enabled", True)),
        locked=bool(user_doc.get("locked", False)),
    )


class IdentitySource(Protocol):
    def resolve(self, username: str | None) -> Requester: ...


class MongoIdentitySource:
    """Reads requesters from the user collection; never writes to it."""

    def __init__(self, repo: WikiMongoRepo | None = None):
        self.repo = repo or WikiMongoRepo()

    def resolve(self, username: str | None) -> Requester:
        if not username:
            return ANONYMOUS
        return requester_from_user(self.repo.get_user_by_username(username))
