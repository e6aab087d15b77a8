"""Per-page permission decisions.

Resolution order for ``has_permission``:

1. Unauthenticated (anonymous, disabled or locked) requester: deny.
2. Requester holds the ADMIN role: allow.
3. Page does not exist: deny.
4. Page has no grant rows: role defaults only (EDITOR views and edits,
   VIEWER views; nobody deletes or manages permissions by default).
5. Page has grant rows (sensitive): explicit grants only. A granted row for
   the requester's user, then for any of the requester's roles, whose type
   satisfies the request (or is FULL_ACCESS) allows; anything else denies.

Rows stored with ``granted=False`` count toward sensitivity but never match
in step 5, so they neither allow nor deny on their own.

Every call reads the store; nothing is cached between calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from server.src.modules.logging_helpers import logger, write_audit
from server.src.modules.wiki_auth import Requester
from server.src.modules.wiki_config import ROLE_ADMIN, ROLE_EDITOR, ROLE_VIEWER, WIKI_ROLE_DESCRIPTIONS
from server.src.modules.wiki_errors import AccessDeniedError, NotFoundError, ValidationError
from server.src.modules.wiki_repo import WikiMongoRepo, role_subject_key, user_subject_key
from server.src.modules.wiki_service import (
    GRANTING_TYPES,
    PERM_DELETE,
    PERM_EDIT,
    PERM_FULL_ACCESS,
    PERM_MANAGE_PERMISSIONS,
    PERM_VIEW,
    normalize_permission_type,
)

ROLE_DEFAULT_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_EDITOR: frozenset({PERM_VIEW, PERM_EDIT}),
    ROLE_VIEWER: frozenset({PERM_VIEW}),
}


@dataclass(frozen=True)
class GrantSubject:
    """Exactly one of a user id or a role (name or id)."""

    user_id: str | None = None
    role: str | None = None

    @classmethod
    def for_user(cls, user_id: str) -> "GrantSubject":
        return cls(user_id=user_id)

    @classmethod
    def for_role(cls, role: str) -> "GrantSubject":
        return cls(role=role)

    def validate(self) -> None:
        has_user = bool(str(self.user_id or "").strip())
        has_role = bool(str(self.role or "").strip())
        if has_user == has_role:
            raise ValidationError("A grant subject must name exactly one of user or role", field="subject")


class AccessResolver:
    def __init__(self, repo: WikiMongoRepo | None = None):
        self.repo = repo or WikiMongoRepo()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def has_permission(self, requester: Requester | None, page_id: str, permission_type: str) -> bool:
        requested = normalize_permission_type(permission_type)
        if requester is None or not requester.is_authenticated:
            logger.debug("No authenticated requester for page %s permission check", page_id)
            return False
        if requester.is_admin:
            logger.debug("Admin %s granted %s on page %s", requester.username, requested, page_id)
            return True
        if not self.repo.page_exists(page_id):
            logger.debug("Page %s does not exist", page_id)
            return False
        if self.repo.count_grants_for_page(page_id) == 0:
            return self._check_role_defaults(requester, requested)
        return self._check_explicit_grants(requester, page_id, requested)

    def _check_role_defaults(self, requester: Requester, requested: str) -> bool:
        return any(requested in ROLE_DEFAULT_PERMISSIONS.get(role, frozenset()) for role in requester.roles)

    def _check_explicit_grants(self, requester: Requester, page_id: str, requested: str) -> bool:
        granting = GRANTING_TYPES[requested]
        user_id = self._requester_user_id(requester)
        if user_id and self.repo.find_granted_user_grants(page_id, user_id, granting):
            logger.debug("User %s has explicit %s on page %s", requester.username, requested, page_id)
            return True
        role_ids = self.repo.role_ids_for_names(requester.roles)
        if role_ids and self.repo.find_granted_role_grants(page_id, role_ids, granting):
            logger.debug("User %s has role grant %s on page %s", requester.username, requested, page_id)
            return True
        logger.debug("User %s denied %s on page %s: no matching grants", requester.username, requested, page_id)
        return False

    def _requester_user_id(self, requester: Requester) -> str | None:
        if requester.user_id:
            return requester.user_id
        return self.repo.get_user_by_username(requester.username or "").get("id")

    def can_view(self, requester: Requester | None, page_id: str) -> bool:
        return self.has_permission(requester, page_id, PERM_VIEW)

    def can_edit(self, requester: Requester | None, page_id: str) -> bool:
        return self.has_permission(requester, page_id, PERM_EDIT)

    def can_delete(self, requester: Requester | None, page_id: str) -> bool:
        return self.has_permission(requester, page_id, PERM_DELETE)

    def can_manage_permissions(self, requester: Requester | None, page_id: str) -> bool:
        return self.has_permission(requester, page_id, PERM_MANAGE_PERMISSIONS)

    def _validate(self, requester: Requester | None, page_id: str, permission_type: str, verb: str) -> None:
        if not self.has_permission(requester, page_id, permission_type):
            logger.warning("Access denied: %s cannot %s page %s", getattr(requester, "username", None), verb, page_id)
            raise AccessDeniedError(f"You do not have permission to {verb} this page", page_id=page_id)

    def validate_can_view(self, requester: Requester | None, page_id: str) -> None:
        self._validate(requester, page_id, PERM_VIEW, "view")

    def validate_can_edit(self, requester: Requester | None, page_id: str) -> None:
        self._validate(requester, page_id, PERM_EDIT, "edit")

    def validate_can_delete(self, requester: Requester | None, page_id: str) -> None:
        self._validate(requester, page_id, PERM_DELETE, "delete")

    # ------------------------------------------------------------------
    # Grant management
    # ------------------------------------------------------------------

    def _require_authenticated(self, requester: Requester | None) -> Requester:
        if requester is None or not requester.is_authenticated:
            raise AccessDeniedError("Not authenticated")
        return requester

    def _require_manage(self, requester: Requester | None, page_id: str) -> Requester:
        requester = self._require_authenticated(requester)
        if requester.is_admin:
            return requester
        if not self.can_manage_permissions(requester, page_id):
            logger.warning("Access denied: %s cannot manage permissions of page %s", requester.username, page_id)
            raise AccessDeniedError("You do not have permission to manage access for this page", page_id=page_id)
        return requester

    def _require_admin(self, requester: Requester | None, message: str) -> Requester:
        requester = self._require_authenticated(requester)
        if not requester.is_admin:
            raise AccessDeniedError(message)
        return requester

    def _require_page(self, page_id: str, session=None) -> dict[str, Any]:
        page = self.repo.get_page_by_id(page_id, session=session)
        if not page:
            raise NotFoundError("page", page_id)
        return page

    def _resolve_role(self, role: str) -> dict[str, Any]:
        return self.repo.get_role_by_name(role) or self.repo.get_role_by_id(role)

    def grant(
        self,
        requester: Requester | None,
        page_id: str,
        subject: GrantSubject,
        permission_type: str,
    ) -> dict[str, Any]:
        """Grant one permission type to a user or role; granting twice updates the same row."""
        requested = normalize_permission_type(permission_type)
        subject.validate()
        self._require_page(page_id)
        requester = self._require_manage(requester, page_id)

        user_id: str | None = None
        role_id: str | None = None
        if subject.user_id:
            user = self.repo.get_user_by_id(subject.user_id)
            if not user:
                raise NotFoundError("user", subject.user_id)
            user_id = user["id"]
            subject_key = user_subject_key(user_id)
            subject_label = user.get("username")
        else:
            role = self._resolve_role(str(subject.role))
            if not role:
                raise NotFoundError("role", subject.role)
            role_id = role["id"]
            subject_key = role_subject_key(role_id)
            subject_label = role.get("name")

        granted_by = self._requester_user_id(requester) or requester.username
        with self.repo.tree_lock(), self.repo.transaction() as session:
            page = self._require_page(page_id, session=session)
            self.repo.touch_pages([page["id"]], session=session)
            row = self.repo.upsert_grant(
                page_id=page["id"],
                subject_key=subject_key,
                permission_type=requested,
                user_id=user_id,
                role_id=role_id,
                granted_by=granted_by,
                session=session,
            )
            write_audit(
                self.repo.db,
                "grant.upsert",
                requester.username,
                page["id"],
                after={"subject": subject_key, "permission_type": requested},
                session=session,
            )
        logger.info("Granted %s to %s on page %s", requested, subject_label, page.get("title"))
        return row

    def revoke(
        self,
        requester: Requester | None,
        page_id: str,
        subject: GrantSubject,
        permission_type: str,
    ) -> bool:
        """Delete the matching grant row; returns False when there was none."""
        requested = normalize_permission_type(permission_type)
        subject.validate()
        requester = self._require_manage(requester, page_id)

        if subject.user_id:
            subject_key = user_subject_key(str(subject.user_id).strip())
        else:
            role = self._resolve_role(str(subject.role))
            if not role:
                return False
            subject_key = role_subject_key(role["id"])

        with self.repo.transaction() as session:
            removed = self.repo.delete_grant(page_id, subject_key, requested, session=session)
            if removed:
                write_audit(
                    self.repo.db,
                    "grant.revoke",
                    requester.username,
                    page_id,
                    before={"subject": subject_key, "permission_type": requested},
                    session=session,
                )
        if removed:
            logger.info("Revoked %s from %s on page %s", requested, subject_key, page_id)
        return removed

    def grant_user_permission(self, requester: Requester | None, page_id: str, user_id: str, permission_type: str) -> dict[str, Any]:
        return self.grant(requester, page_id, GrantSubject.for_user(user_id), permission_type)

    def grant_role_permission(self, requester: Requester | None, page_id: str, role: str, permission_type: str) -> dict[str, Any]:
        return self.grant(requester, page_id, GrantSubject.for_role(role), permission_type)

    def revoke_user_permission(self, requester: Requester | None, page_id: str, user_id: str, permission_type: str) -> bool:
        return self.revoke(requester, page_id, GrantSubject.for_user(user_id), permission_type)

    def revoke_role_permission(self, requester: Requester | None, page_id: str, role: str, permission_type: str) -> bool:
        return self.revoke(requester, page_id, GrantSubject.for_role(role), permission_type)

    def revoke_all(self, requester: Requester | None, page_id: str) -> int:
        self._require_page(page_id)
        requester = self._require_manage(requester, page_id)
        with self.repo.transaction() as session:
            removed = self.repo.delete_grants_for_page(page_id, session=session)
            write_audit(self.repo.db, "grant.revoke_all", requester.username, page_id, before={"count": removed}, session=session)
        logger.info("Revoked all %d permissions for page %s", removed, page_id)
        return removed

    def mark_sensitive(self, requester: Requester | None, page_id: str) -> bool:
        """Restrict a page by seeding FULL_ACCESS for the ADMIN role.

        Returns False without writing when the page already has grants.
        """
        requester = self._require_admin(requester, "Only administrators can mark pages as sensitive")
        self._require_page(page_id)
        with self.repo.tree_lock(), self.repo.transaction() as session:
            page = self._require_page(page_id, session=session)
            if self.repo.count_grants_for_page(page_id, session=session) > 0:
                logger.info("Page %s is already marked as sensitive", page.get("title"))
                return False
            self.repo.touch_pages([page["id"]], session=session)
            admin_role = self.repo.get_or_create_role(ROLE_ADMIN, WIKI_ROLE_DESCRIPTIONS[ROLE_ADMIN], session=session)
            self.repo.upsert_grant(
                page_id=page["id"],
                subject_key=role_subject_key(admin_role["id"]),
                permission_type=PERM_FULL_ACCESS,
                user_id=None,
                role_id=admin_role["id"],
                granted_by=self._requester_user_id(requester) or requester.username,
                session=session,
            )
            write_audit(self.repo.db, "page.mark_sensitive", requester.username, page["id"], session=session)
        logger.info("Marked page %s as sensitive", page.get("title"))
        return True

    def mark_public(self, requester: Requester | None, page_id: str) -> int:
        """Drop every grant on the page so role defaults apply again."""
        requester = self._require_admin(requester, "Only administrators can change page sensitivity")
        page = self._require_page(page_id)
        with self.repo.transaction() as session:
            removed = self.repo.delete_grants_for_page(page_id, session=session)
            write_audit(
                self.repo.db,
                "page.mark_public",
                requester.username,
                page["id"],
                before={"count": removed},
                session=session,
            )
        logger.info("Marked page %s as public (%d grants removed)", page.get("title"), removed)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_sensitive(self, page_id: str) -> bool:
        return self.repo.count_grants_for_page(page_id) > 0

    def get_sensitive_page_ids(self) -> set[str]:
        return self.repo.sensitive_page_ids()

    def get_page_permissions(self, page_id: str) -> list[dict[str, Any]]:
        return self.repo.grants_for_page(page_id)

    def get_user_permissions(self, user_id: str) -> list[dict[str, Any]]:
        return self.repo.grants_for_user(user_id)

    def get_users_with_permission(self, page_id: str, permission_type: str) -> list[dict[str, Any]]:
        """Users holding exactly ``permission_type`` or FULL_ACCESS as a direct grant."""
        requested = normalize_permission_type(permission_type)
        matching = {requested, PERM_FULL_ACCESS}
        user_ids = {
            row["user_id"]
            for row in self.repo.grants_for_page(page_id)
            if row.get("user_id") and row.get("granted") and row.get("permission_type") in matching
        }
        return self.repo.users_by_ids(user_ids)
