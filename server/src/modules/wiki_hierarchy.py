from __future__ import annotations

from typing import Any
from uuid import uuid4

from pymongo.errors import DuplicateKeyError

from server.src.modules.logging_helpers import logger, write_audit
from server.src.modules.wiki_errors import NotFoundError, ValidationError
from server.src.modules.wiki_links import BacklinkGraph
from server.src.modules.wiki_repo import WikiMongoRepo
from server.src.modules.wiki_service import (
    generate_slug,
    lowest_free_slug,
    normalize_content,
    normalize_title,
    sort_for_tree,
    utc_now,
)

SLUG_ATTEMPTS = 5


class PageHierarchy:
    def __init__(self, repo: WikiMongoRepo | None = None, links: BacklinkGraph | None = None):
        self.repo = repo or WikiMongoRepo()
        self.links = links or BacklinkGraph(self.repo)

    def _require_page(self, page_id: str, session=None) -> dict[str, Any]:
        page = self.repo.get_page_by_id(page_id, session=session)
        if not page:
            raise NotFoundError("page", page_id)
        return page

    # ------------------------------------------------------------------
    # Slugs
    # ------------------------------------------------------------------

    def generate_slug(self, title: str) -> str:
        return generate_slug(title)

    def generate_unique_slug(self, title: str, session=None) -> str:
        base = generate_slug(title)
        return lowest_free_slug(base, self.repo.slugs_with_prefix(base, session=session))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        content: str | None = None,
        is_folder: bool = False,
        parent_id: str | None = None,
        *,
        summary: str | None = None,
        published: bool = False,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        clean_title = normalize_title(title)
        clean_content = normalize_content(content, bool(is_folder))

        for _attempt in range(SLUG_ATTEMPTS):
            try:
                with self.repo.tree_lock(), self.repo.transaction() as session:
                    if self.repo.title_exists(clean_title, session=session):
                        raise ValidationError(f"A page with this title already exists: {clean_title}", field="title")
                    if parent_id is not None:
                        if not self.repo.page_exists(parent_id, session=session):
                            raise NotFoundError("page", parent_id)
                        self.repo.touch_pages([parent_id], session=session)
                    now = utc_now()
                    page_doc = {
                        "id": str(uuid4()),
                        "title": clean_title,
                        "slug": self.generate_unique_slug(clean_title, session=session),
                        "content": clean_content,
                        "summary": (str(summary).strip() or None) if summary else None,
                        "is_folder": bool(is_folder),
                        "published": bool(published),
                        "version": 1,
                        "tree_rev": 0,
                        "parent_id": parent_id,
                        "created_by": created_by,
                        "updated_by": created_by,
                        "created_at": now,
                        "updated_at": now,
                    }
                    page = self.repo.insert_page(page_doc, session=session)
                    if not page["is_folder"]:
                        self.links.maintain_links(page, session=session)
            except DuplicateKeyError:
                if self.repo.title_exists(clean_title):
                    raise ValidationError(f"A page with this title already exists: {clean_title}", field="title") from None
                logger.info("Slug collision while creating '%s'; retrying", clean_title)
                continue
            logger.info("Created wiki page: %s (id: %s, slug: %s)", page["title"], page["id"], page["slug"])
            return page
        raise ValidationError(f"Could not assign a unique slug for: {clean_title}", field="slug")

    def update(
        self,
        page_id: str,
        title: str,
        content: str | None,
        *,
        summary: str | None = None,
        published: bool | None = None,
        updated_by: str | None = None,
    ) -> dict[str, Any]:
        """Save a new title and content. The id and slug never change; the version always advances."""
        existing = self._require_page(page_id)
        clean_title = normalize_title(title)
        if clean_title != existing.get("title") and self.repo.title_exists(clean_title, exclude_id=existing["id"]):
            raise ValidationError(f"A page with this title already exists: {clean_title}", field="title")
        is_folder = bool(existing.get("is_folder"))
        clean_content = normalize_content(content, is_folder)
        content_changed = clean_content != existing.get("content")

        fields: dict[str, Any] = {
            "title": clean_title,
            "content": clean_content,
            "updated_by": updated_by,
            "updated_at": utc_now(),
        }
        if summary is not None:
            fields["summary"] = str(summary).strip() or None
        if published is not None:
            fields["published"] = bool(published)

        try:
            with self.repo.tree_lock(), self.repo.transaction() as session:
                written = self.repo.update_page_fields(
                    existing["id"],
                    fields,
                    expected_version=int(existing.get("version") or 1),
                    bump_version=True,
                    session=session,
                )
                if not written:
                    raise ValidationError("Page was modified concurrently; reload and retry", field="version")
                page = self.repo.get_page_by_id(existing["id"], session=session)
                if content_changed and not is_folder:
                    self.links.maintain_links(page, session=session)
        except DuplicateKeyError:
            raise ValidationError(f"A page with this title already exists: {clean_title}", field="title") from None

        logger.info("Updated wiki page: %s (id: %s, version: %s)", page["title"], page["id"], page["version"])
        return page

    def move(self, page_id: str, new_parent_id: str | None, *, moved_by: str | None = None) -> dict[str, Any]:
        if new_parent_id is not None and new_parent_id == page_id:
            raise ValidationError("A page cannot be its own parent", field="parent_id")

        with self.repo.tree_lock(), self.repo.transaction() as session:
            page = self._require_page(page_id, session=session)
            if new_parent_id is not None:
                self._require_page(new_parent_id, session=session)
                ancestors = self._ancestor_ids(new_parent_id, session=session)
                if page_id in ancestors:
                    raise ValidationError("Cannot move a page under its own descendant", field="parent_id")
                self.repo.touch_pages([new_parent_id, *ancestors], session=session)
            self.repo.set_parent(page_id, new_parent_id, updated_by=moved_by, session=session)
            write_audit(
                self.repo.db,
                "page.move",
                moved_by,
                page_id,
                before={"parent_id": page.get("parent_id")},
                after={"parent_id": new_parent_id},
                session=session,
            )
            moved = self.repo.get_page_by_id(page_id, session=session)

        logger.info("Moved wiki page %s under %s", page_id, new_parent_id or "<root>")
        return moved

    def delete(self, page_id: str, *, deleted_by: str | None = None) -> dict[str, Any]:
        """Delete a page; its children move up to its parent and are never deleted."""
        with self.repo.tree_lock(), self.repo.transaction() as session:
            page = self._require_page(page_id, session=session)
            new_parent_id = page.get("parent_id")
            reparented = self.repo.reparent_children(page_id, new_parent_id, session=session)
            links_removed = self.links.clear_links(page_id, session=session)
            grants_removed = self.repo.delete_grants_for_page(page_id, session=session)
            self.repo.delete_page(page_id, session=session)
            write_audit(
                self.repo.db,
                "page.delete",
                deleted_by,
                page_id,
                before={"title": page.get("title"), "slug": page.get("slug"), "parent_id": new_parent_id},
                after={"reparented": reparented, "links_removed": links_removed, "grants_removed": grants_removed},
                session=session,
            )

        logger.info(
            "Deleted wiki page: %s (id: %s); %d children reparented, %d links and %d grants removed",
            page.get("title"),
            page_id,
            reparented,
            links_removed,
            grants_removed,
        )
        return page

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_page(self, page_id: str) -> dict[str, Any]:
        return self._require_page(page_id)

    def get_page_by_slug(self, slug: str) -> dict[str, Any]:
        page = self.repo.get_page_by_slug(slug)
        if not page:
            raise NotFoundError("page", slug)
        return page

    def get_page_by_title(self, title: str) -> dict[str, Any]:
        page = self.repo.get_page_by_title(title)
        if not page:
            raise NotFoundError("page", title)
        return page

    def find_page_by_title_or_slug(self, name: str) -> dict[str, Any] | None:
        return self.links.resolve_link_target(name) or None

    def get_root_pages(self) -> list[dict[str, Any]]:
        return sort_for_tree(self.repo.list_root_pages())

    def get_children(self, page_id: str) -> list[dict[str, Any]]:
        self._require_page(page_id)
        return sort_for_tree(self.repo.list_children(page_id))

    def _ancestor_ids(self, page_id: str, session=None) -> list[str]:
        """Parent chain of ``page_id``, nearest first."""
        ancestors: list[str] = []
        seen = {page_id}
        current = self.repo.get_page_by_id(page_id, session=session)
        while current and current.get("parent_id"):
            parent_id = current["parent_id"]
            if parent_id in seen:
                logger.error("Parent cycle detected at page %s", parent_id)
                break
            seen.add(parent_id)
            ancestors.append(parent_id)
            current = self.repo.get_page_by_id(parent_id, session=session)
        return ancestors

    def get_ancestor_path(self, page_id: str) -> list[dict[str, Any]]:
        page = self._require_page(page_id)
        path = [page]
        current = page
        while current.get("parent_id"):
            current = self.repo.get_page_by_id(current["parent_id"])
            if not current or any(p["id"] == current["id"] for p in path):
                break
            path.append(current)
        path.reverse()
        return path

    def get_depth(self, page_id: str) -> int:
        self._require_page(page_id)
        return len(self._ancestor_ids(page_id))

    def get_descendants(self, page_id: str) -> list[dict[str, Any]]:
        self._require_page(page_id)
        found: list[dict[str, Any]] = []
        seen = {page_id}
        frontier = [page_id]
        while frontier:
            next_frontier: list[str] = []
            for parent_id in frontier:
                for child in sort_for_tree(self.repo.list_children(parent_id)):
                    if child["id"] in seen:
                        continue
                    seen.add(child["id"])
                    found.append(child)
                    next_frontier.append(child["id"])
            frontier = next_frontier
        return found

    def get_page_tree(self) -> list[dict[str, Any]]:
        by_parent: dict[str | None, list[dict[str, Any]]] = {}
        for page in self.repo.list_all_pages():
            by_parent.setdefault(page.get("parent_id"), []).append(page)

        def build(parent_id: str | None, seen: frozenset[str]) -> list[dict[str, Any]]:
            nodes = []
            for page in sort_for_tree(by_parent.get(parent_id, [])):
                if page["id"] in seen:
                    continue
                nodes.append({"page": page, "children": build(page["id"], seen | {page["id"]})})
            return nodes

        return build(None, frozenset())

    def list_recently_updated(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.repo.list_recently_updated(limit=limit)

    def list_published(self) -> list[dict[str, Any]]:
        return self.repo.list_published()
