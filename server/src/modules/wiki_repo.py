from __future__ import annotations

import re
import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from db_mongo import get_db
from server.src.modules.wiki_config import WIKI_ROLE_DESCRIPTIONS, get_wiki_settings
from server.src.modules.wiki_errors import ValidationError
from server.src.modules.wiki_service import normalize_role_name, slug_suffix_pattern, utc_now


WIKI_PAGES_COL = "wiki_pages"
WIKI_LINKS_COL = "wiki_links"
WIKI_GRANTS_COL = "wiki_page_grants"
WIKI_ROLES_COL = "wiki_roles"
WIKI_USERS_COL = "wiki_users"
WIKI_JOBS_COL = "wiki_jobs"
WIKI_LOCKS_COL = "wiki_locks"

TREE_LOCK = "page_tree"
LOCK_POLL_SECONDS = 0.05


def user_subject_key(user_id: str) -> str:
    return f"user:{user_id}"


def role_subject_key(role_id: str) -> str:
    return f"role:{role_id}"


def ensure_wiki_collections_and_indexes(db=None) -> None:
    db = db if db is not None else get_db()

    db[WIKI_PAGES_COL].create_index([("id", ASCENDING)], unique=True, name="ux_wiki_page_id")
    db[WIKI_PAGES_COL].create_index([("slug", ASCENDING)], unique=True, name="ux_wiki_page_slug")
    db[WIKI_PAGES_COL].create_index([("title", ASCENDING)], unique=True, name="ux_wiki_page_title")
    db[WIKI_PAGES_COL].create_index([("parent_id", ASCENDING)], name="ix_wiki_page_parent")
    db[WIKI_PAGES_COL].create_index([("updated_at", DESCENDING)], name="ix_wiki_page_updated")

    db[WIKI_LINKS_COL].create_index(
        [("source_page_id", ASCENDING), ("target_page_id", ASCENDING)],
        unique=True,
        name="ux_wiki_link_pair",
    )
    db[WIKI_LINKS_COL].create_index([("source_page_id", ASCENDING)], name="ix_wiki_link_source")
    db[WIKI_LINKS_COL].create_index([("target_page_id", ASCENDING)], name="ix_wiki_link_target")

    db[WIKI_GRANTS_COL].create_index([("id", ASCENDING)], unique=True, name="ux_wiki_grant_id")
    db[WIKI_GRANTS_COL].create_index(
        [("page_id", ASCENDING), ("subject_key", ASCENDING), ("permission_type", ASCENDING)],
        unique=True,
        name="ux_wiki_grant_subject",
    )
    db[WIKI_GRANTS_COL].create_index([("user_id", ASCENDING)], name="ix_wiki_grant_user")
    db[WIKI_GRANTS_COL].create_index([("role_id", ASCENDING)], name="ix_wiki_grant_role")

    db[WIKI_ROLES_COL].create_index([("id", ASCENDING)], unique=True, name="ux_wiki_role_id")
    db[WIKI_ROLES_COL].create_index([("name", ASCENDING)], unique=True, name="ux_wiki_role_name")

    db[WIKI_USERS_COL].create_index([("id", ASCENDING)], unique=True, name="ux_wiki_user_id")
    db[WIKI_USERS_COL].create_index([("username", ASCENDING)], unique=True, name="ux_wiki_user_username")

    db[WIKI_JOBS_COL].create_index([("id", ASCENDING)], unique=True, name="ux_wiki_job_id")


class WikiMongoRepo:
    def __init__(self, db=None):
        self.db = db if db is not None else get_db()
        self.pages = self.db[WIKI_PAGES_COL]
        self.links = self.db[WIKI_LINKS_COL]
        self.grants = self.db[WIKI_GRANTS_COL]
        self.roles = self.db[WIKI_ROLES_COL]
        self.users = self.db[WIKI_USERS_COL]
        self.jobs = self.db[WIKI_JOBS_COL]
        self.locks = self.db[WIKI_LOCKS_COL]
        ensure_wiki_collections_and_indexes(self.db)
        if get_wiki_settings().seed_roles:
            self.ensure_default_roles()

    @staticmethod
    def _doc_without_mongo_id(doc: dict[str, Any] | None) -> dict[str, Any]:
        if not isinstance(doc, dict):
            return {}
        out = dict(doc)
        out.pop("_id", None)
        return out

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Yield a session bound to a multi-document transaction, or None.

        Transactions need a replica set, so they are opt-in through
        ``WIKI_USE_TRANSACTIONS``.
        """
        if not get_wiki_settings().use_transactions:
            yield None
            return
        with self.db.client.start_session() as session:
            with session.start_transaction():
                yield session

    @contextmanager
    def tree_lock(self, name: str = TREE_LOCK) -> Iterator[str]:
        """Hold a leased lock document for the duration of the block.

        Check-then-write sequences over the page tree, link edges and grants
        run under it so they cannot interleave, with or without transactions.
        The lease lets a crashed holder's lock expire after
        ``WIKI_LOCK_LEASE_SECONDS``.
        """
        cfg = get_wiki_settings()
        owner = str(uuid4())
        deadline = time.monotonic() + cfg.lock_wait_ms / 1000.0
        while not self._try_acquire_lock(name, owner, cfg.lock_lease_seconds):
            if time.monotonic() >= deadline:
                raise ValidationError("Another change to the page tree is in progress; retry", field="lock")
            time.sleep(LOCK_POLL_SECONDS)
        try:
            yield owner
        finally:
            self.locks.delete_one({"_id": name, "owner": owner})

    def _try_acquire_lock(self, name: str, owner: str, lease_seconds: int) -> bool:
        now = time.time()
        try:
            # Matches only an expired lease; a live one makes the upsert collide on _id.
            self.locks.find_one_and_update(
                {"_id": name, "expires_at": {"$lt": now}},
                {"$set": {"owner": owner, "expires_at": now + lease_seconds}},
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return True

    def touch_pages(self, page_ids: Iterable[str], session=None) -> int:
        """Bump ``tree_rev`` on pages a check depended on.

        Inside a transaction this turns a concurrent write skew (two moves,
        create-under vs delete, link-to vs delete) into a write conflict.
        """
        clean_ids = sorted({str(pid).strip() for pid in page_ids if str(pid or "").strip()})
        if not clean_ids:
            return 0
        result = self.pages.update_many({"id": {"$in": clean_ids}}, {"$inc": {"tree_rev": 1}}, session=session)
        return int(result.matched_count)

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def get_page_by_id(self, page_id: str, session=None) -> dict[str, Any]:
        clean_id = str(page_id or "").strip()
        if not clean_id:
            return {}
        return self._doc_without_mongo_id(self.pages.find_one({"id": clean_id}, {"_id": 0}, session=session))

    def get_page_by_slug(self, slug: str, session=None) -> dict[str, Any]:
        clean = str(slug or "").strip()
        if not clean:
            return {}
        return self._doc_without_mongo_id(self.pages.find_one({"slug": clean}, {"_id": 0}, session=session))

    def get_page_by_title(self, title: str, session=None) -> dict[str, Any]:
        if title is None:
            return {}
        return self._doc_without_mongo_id(self.pages.find_one({"title": str(title)}, {"_id": 0}, session=session))

    def page_exists(self, page_id: str, session=None) -> bool:
        clean_id = str(page_id or "").strip()
        if not clean_id:
            return False
        return self.pages.find_one({"id": clean_id}, {"_id": 1}, session=session) is not None

    def title_exists(self, title: str, exclude_id: str = "", session=None) -> bool:
        query: dict[str, Any] = {"title": str(title or "")}
        clean_exclude = str(exclude_id or "").strip()
        if clean_exclude:
            query["id"] = {"$ne": clean_exclude}
        return self.pages.find_one(query, {"_id": 1}, session=session) is not None

    def slugs_with_prefix(self, base_slug: str, session=None) -> list[str]:
        """Slugs equal to ``base_slug`` or ``base_slug-<n>``."""
        rows = self.pages.find(
            {"slug": {"$regex": slug_suffix_pattern(base_slug)}},
            {"_id": 0, "slug": 1},
            session=session,
        )
        return [str(row.get("slug") or "") for row in rows]

    def insert_page(self, page_doc: dict[str, Any], session=None) -> dict[str, Any]:
        self.pages.insert_one(dict(page_doc), session=session)
        return self._doc_without_mongo_id(page_doc)

    def update_page_fields(
        self,
        page_id: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
        bump_version: bool = False,
        session=None,
    ) -> bool:
        query: dict[str, Any] = {"id": str(page_id or "").strip()}
        if expected_version is not None:
            query["version"] = int(expected_version)
        update: dict[str, Any] = {"$set": dict(fields)}
        if bump_version:
            update["$inc"] = {"version": 1}
        result = self.pages.update_one(query, update, session=session)
        return bool(result.matched_count)

    def set_parent(self, page_id: str, parent_id: str | None, *, updated_by: str | None = None, session=None) -> bool:
        result = self.pages.update_one(
            {"id": str(page_id or "").strip()},
            {"$set": {"parent_id": parent_id, "updated_by": updated_by, "updated_at": utc_now()}},
            session=session,
        )
        return bool(result.matched_count)

    def reparent_children(self, old_parent_id: str, new_parent_id: str | None, session=None) -> int:
        result = self.pages.update_many(
            {"parent_id": str(old_parent_id or "").strip()},
            {"$set": {"parent_id": new_parent_id, "updated_at": utc_now()}},
            session=session,
        )
        return int(result.modified_count)

    def delete_page(self, page_id: str, session=None) -> bool:
        clean_id = str(page_id or "").strip()
        if not clean_id:
            return False
        deleted = self.pages.delete_one({"id": clean_id}, session=session)
        return bool(deleted.deleted_count)

    def list_root_pages(self, session=None) -> list[dict[str, Any]]:
        rows = self.pages.find({"parent_id": None}, {"_id": 0}, session=session)
        return [self._doc_without_mongo_id(row) for row in rows]

    def list_children(self, parent_id: str, session=None) -> list[dict[str, Any]]:
        rows = self.pages.find({"parent_id": str(parent_id or "").strip()}, {"_id": 0}, session=session)
        return [self._doc_without_mongo_id(row) for row in rows]

    def list_all_pages(self, session=None) -> list[dict[str, Any]]:
        return [self._doc_without_mongo_id(row) for row in self.pages.find({}, {"_id": 0}, session=session)]

    def list_page_ids(self, session=None) -> list[str]:
        return [str(row.get("id")) for row in self.pages.find({}, {"_id": 0, "id": 1}, session=session)]

    def list_recently_updated(self, limit: int = 20, session=None) -> list[dict[str, Any]]:
        rows = self.pages.find({}, {"_id": 0}, session=session).sort("updated_at", DESCENDING).limit(int(limit))
        return [self._doc_without_mongo_id(row) for row in rows]

    def list_published(self, session=None) -> list[dict[str, Any]]:
        rows = self.pages.find({"published": True}, {"_id": 0}, session=session).sort("title", ASCENDING)
        return [self._doc_without_mongo_id(row) for row in rows]

    def pages_by_ids(self, page_ids: Iterable[str], session=None) -> list[dict[str, Any]]:
        clean_ids = [str(pid).strip() for pid in page_ids if str(pid or "").strip()]
        if not clean_ids:
            return []
        rows = self.pages.find({"id": {"$in": clean_ids}}, {"_id": 0}, session=session)
        return [self._doc_without_mongo_id(row) for row in rows]

    # ------------------------------------------------------------------
    # Link edges
    # ------------------------------------------------------------------

    def replace_outgoing_links(self, source_page_id: str, target_page_ids: Iterable[str], session=None) -> int:
        clean_source = str(source_page_id or "").strip()
        targets = sorted({str(tid).strip() for tid in target_page_ids if str(tid or "").strip()})
        self.links.delete_many({"source_page_id": clean_source}, session=session)
        if not targets:
            return 0
        now = utc_now()
        self.links.insert_many(
            [{"source_page_id": clean_source, "target_page_id": tid, "created_at": now} for tid in targets],
            session=session,
        )
        return len(targets)

    def clear_outgoing_links(self, source_page_id: str, session=None) -> int:
        result = self.links.delete_many({"source_page_id": str(source_page_id or "").strip()}, session=session)
        return int(result.deleted_count)

    def outgoing_target_ids(self, source_page_id: str, session=None) -> list[str]:
        rows = self.links.find({"source_page_id": str(source_page_id or "").strip()}, {"_id": 0, "target_page_id": 1}, session=session)
        return [str(row.get("target_page_id")) for row in rows]

    def linking_source_ids(self, target_page_id: str, session=None) -> list[str]:
        """Ids of pages linking to ``target_page_id``."""
        rows = self.links.find({"target_page_id": str(target_page_id or "").strip()}, {"_id": 0, "source_page_id": 1}, session=session)
        return sorted({str(row.get("source_page_id")) for row in rows})

    def linked_target_ids(self, session=None) -> set[str]:
        return {str(tid) for tid in self.links.distinct("target_page_id", session=session)}

    def count_links_to(self, target_page_id: str, session=None) -> int:
        return int(self.links.count_documents({"target_page_id": str(target_page_id or "").strip()}, session=session))

    def delete_links_touching(self, page_id: str, session=None) -> int:
        clean_id = str(page_id or "").strip()
        result = self.links.delete_many(
            {"$or": [{"source_page_id": clean_id}, {"target_page_id": clean_id}]},
            session=session,
        )
        return int(result.deleted_count)

    # ------------------------------------------------------------------
    # Permission grants
    # ------------------------------------------------------------------

    def count_grants_for_page(self, page_id: str, session=None) -> int:
        return int(self.grants.count_documents({"page_id": str(page_id or "").strip()}, session=session))

    def find_grant(self, page_id: str, subject_key: str, permission_type: str, session=None) -> dict[str, Any]:
        row = self.grants.find_one(
            {"page_id": page_id, "subject_key": subject_key, "permission_type": permission_type},
            {"_id": 0},
            session=session,
        )
        return self._doc_without_mongo_id(row)

    def upsert_grant(
        self,
        *,
        page_id: str,
        subject_key: str,
        permission_type: str,
        user_id: str | None,
        role_id: str | None,
        granted_by: str | None,
        session=None,
    ) -> dict[str, Any]:
        """Insert-or-update one grant row in a single atomic write.

        The unique ``(page_id, subject_key, permission_type)`` index
        serializes concurrent writers; the loser of an upsert race gets a
        DuplicateKeyError and falls back to updating the winner's row.
        """
        query = {"page_id": page_id, "subject_key": subject_key, "permission_type": permission_type}
        now = utc_now()
        update = {
            "$set": {"granted": True, "granted_by": granted_by, "updated_at": now},
            "$setOnInsert": {
                "id": str(uuid4()),
                "user_id": user_id,
                "role_id": role_id,
                "created_at": now,
            },
        }
        try:
            row = self.grants.find_one_and_update(
                query,
                update,
                projection={"_id": 0},
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        except DuplicateKeyError:
            row = self.grants.find_one_and_update(
                query,
                {"$set": update["$set"]},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        return self._doc_without_mongo_id(row)

    def delete_grant(self, page_id: str, subject_key: str, permission_type: str, session=None) -> bool:
        result = self.grants.delete_one(
            {"page_id": page_id, "subject_key": subject_key, "permission_type": permission_type},
            session=session,
        )
        return bool(result.deleted_count)

    def delete_grants_for_page(self, page_id: str, session=None) -> int:
        result = self.grants.delete_many({"page_id": str(page_id or "").strip()}, session=session)
        return int(result.deleted_count)

    def grants_for_page(self, page_id: str, session=None) -> list[dict[str, Any]]:
        rows = self.grants.find({"page_id": str(page_id or "").strip()}, {"_id": 0}, session=session).sort("created_at", ASCENDING)
        return [self._doc_without_mongo_id(row) for row in rows]

    def grants_for_user(self, user_id: str, session=None) -> list[dict[str, Any]]:
        rows = self.grants.find({"user_id": str(user_id or "").strip()}, {"_id": 0}, session=session).sort("created_at", ASCENDING)
        return [self._doc_without_mongo_id(row) for row in rows]

    def find_granted_user_grants(self, page_id: str, user_id: str, permission_types: Iterable[str], session=None) -> list[dict[str, Any]]:
        rows = self.grants.find(
            {
                "page_id": page_id,
                "user_id": str(user_id or "").strip(),
                "permission_type": {"$in": list(permission_types)},
                "granted": True,
            },
            {"_id": 0},
            session=session,
        )
        return [self._doc_without_mongo_id(row) for row in rows]

    def find_granted_role_grants(self, page_id: str, role_ids: Iterable[str], permission_types: Iterable[str], session=None) -> list[dict[str, Any]]:
        clean_roles = [str(rid) for rid in role_ids if str(rid or "").strip()]
        if not clean_roles:
            return []
        rows = self.grants.find(
            {
                "page_id": page_id,
                "role_id": {"$in": clean_roles},
                "permission_type": {"$in": list(permission_types)},
                "granted": True,
            },
            {"_id": 0},
            session=session,
        )
        return [self._doc_without_mongo_id(row) for row in rows]

    def sensitive_page_ids(self, session=None) -> set[str]:
        return {str(pid) for pid in self.grants.distinct("page_id", session=session)}

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_default_roles(self) -> None:
        now = utc_now()
        for name, description in WIKI_ROLE_DESCRIPTIONS.items():
            self.roles.update_one(
                {"name": name},
                {
                    "$setOnInsert": {
                        "id": str(uuid4()),
                        "description": description,
                        "created_at": now,
                    },
                },
                upsert=True,
            )

    def get_role_by_name(self, name: str, session=None) -> dict[str, Any]:
        clean = normalize_role_name(name)
        if not clean:
            return {}
        return self._doc_without_mongo_id(self.roles.find_one({"name": clean}, {"_id": 0}, session=session))

    def get_role_by_id(self, role_id: str, session=None) -> dict[str, Any]:
        clean = str(role_id or "").strip()
        if not clean:
            return {}
        return self._doc_without_mongo_id(self.roles.find_one({"id": clean}, {"_id": 0}, session=session))

    def create_role(self, name: str, description: str | None = None, session=None) -> dict[str, Any]:
        clean = normalize_role_name(name)
        if not clean or not re.match(r"^[A-Z][A-Z0-9_]*$", clean):
            raise ValidationError(f"Invalid role name: {name!r}", field="role")
        doc = {
            "id": str(uuid4()),
            "name": clean,
            "description": (str(description).strip() if description else None),
            "created_at": utc_now(),
        }
        self.roles.insert_one(dict(doc), session=session)
        return doc

    def get_or_create_role(self, name: str, description: str | None = None, session=None) -> dict[str, Any]:
        existing = self.get_role_by_name(name, session=session)
        if existing:
            return existing
        try:
            return self.create_role(name, description, session=session)
        except DuplicateKeyError:
            return self.get_role_by_name(name, session=session)

    def list_roles(self, session=None) -> list[dict[str, Any]]:
        return [self._doc_without_mongo_id(row) for row in self.roles.find({}, {"_id": 0}, session=session).sort("name", ASCENDING)]

    def role_ids_for_names(self, names: Iterable[str], session=None) -> list[str]:
        clean = sorted({normalize_role_name(name) for name in names if normalize_role_name(name)})
        if not clean:
            return []
        rows = self.roles.find({"name": {"$in": clean}}, {"_id": 0, "id": 1}, session=session)
        return [str(row.get("id")) for row in rows]

    # ------------------------------------------------------------------
    # Users (owned by the identity collaborator; written here only by
    # seeding scripts and tests)
    # ------------------------------------------------------------------

    def create_user(
        self,
        *,
        username: str,
        roles: Iterable[str] = (),
        enabled: bool = True,
        locked: bool = False,
        session=None,
    ) -> dict[str, Any]:
        doc = {
            "id": str(uuid4()),
            "username": str(username or "").strip(),
            "roles": sorted({normalize_role_name(role) for role in roles if normalize_role_name(role)}),
            "enabled": bool(enabled),
            "locked": bool(locked),
            "created_at": utc_now(),
        }
        if not doc["username"]:
            raise ValueError("Invalid username")
        self.users.insert_one(dict(doc), session=session)
        return doc

    def get_user_by_id(self, user_id: str, session=None) -> dict[str, Any]:
        clean = str(user_id or "").strip()
        if not clean:
            return {}
        return self._doc_without_mongo_id(self.users.find_one({"id": clean}, {"_id": 0}, session=session))

    def get_user_by_username(self, username: str, session=None) -> dict[str, Any]:
        clean = str(username or "").strip()
        if not clean:
            return {}
        return self._doc_without_mongo_id(self.users.find_one({"username": clean}, {"_id": 0}, session=session))

    def update_user(self, user_id: str, *, roles: Iterable[str] | None = None, enabled: bool | None = None, locked: bool | None = None, session=None) -> dict[str, Any]:
        update_doc: dict[str, Any] = {}
        if roles is not None:
            update_doc["roles"] = sorted({normalize_role_name(role) for role in roles if normalize_role_name(role)})
        if enabled is not None:
            update_doc["enabled"] = bool(enabled)
        if locked is not None:
            update_doc["locked"] = bool(locked)
        if update_doc:
            self.users.update_one({"id": str(user_id or "").strip()}, {"$set": update_doc}, session=session)
        return self.get_user_by_id(user_id, session=session)

    def users_by_ids(self, user_ids: Iterable[str], session=None) -> list[dict[str, Any]]:
        clean_ids = [str(uid).strip() for uid in user_ids if str(uid or "").strip()]
        if not clean_ids:
            return []
        rows = self.users.find({"id": {"$in": clean_ids}}, {"_id": 0}, session=session).sort("username", ASCENDING)
        return [self._doc_without_mongo_id(row) for row in rows]

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------

    def create_job(self, kind: str) -> dict[str, Any]:
        doc = {
            "id": str(uuid4()),
            "kind": kind,
            "status": "pending",
            "total": 0,
            "processed": 0,
            "failed_page_ids": [],
            "error": None,
            "created_at": utc_now(),
            "started_at": None,
            "finished_at": None,
        }
        self.jobs.insert_one(dict(doc))
        return doc

    def update_job(self, job_id: str, **fields: Any) -> None:
        self.jobs.update_one({"id": str(job_id or "").strip()}, {"$set": fields})

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self._doc_without_mongo_id(self.jobs.find_one({"id": str(job_id or "").strip()}, {"_id": 0}))
