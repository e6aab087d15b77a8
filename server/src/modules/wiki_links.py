"""Backlink graph derived from ``[[Name]]`` cross-references in page content.

Only outgoing edges are stored (one row per source/target pair in the link
collection). Backlinks are always answered as the reverse query over those
rows, so they cannot drift from the outgoing sets.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from functools import lru_cache
from typing import Any

from server.src.modules.wiki_config import get_wiki_settings
from server.src.modules.wiki_errors import NotFoundError
from server.src.modules.wiki_repo import WikiMongoRepo
from server.src.modules.wiki_service import extract_link_names, generate_slug, sort_by_title, utc_now

logger = logging.getLogger(__name__)

REPARSE_JOB_KIND = "reparse_links"
JOB_PROGRESS_EVERY = 50


@lru_cache
def _default_executor() -> ThreadPoolExecutor:
    return ThreadPoolExecutor(
        max_workers=get_wiki_settings().reparse_workers,
        thread_name_prefix="wiki-reparse",
    )


class BacklinkGraph:
    def __init__(self, repo: WikiMongoRepo | None = None):
        self.repo = repo or WikiMongoRepo()

    def _require_page(self, page_id: str, session=None) -> dict[str, Any]:
        page = self.repo.get_page_by_id(page_id, session=session)
        if not page:
            raise NotFoundError("page", page_id)
        return page

    def _coerce_page(self, page: dict[str, Any] | str, session=None) -> dict[str, Any]:
        if isinstance(page, dict):
            return page
        return self._require_page(page, session=session)

    def resolve_link_target(self, name: str, session=None) -> dict[str, Any]:
        """Exact title match first, then the page whose slug the name would produce."""
        target = self.repo.get_page_by_title(name, session=session)
        if target:
            return target
        slug = generate_slug(name)
        if not slug:
            return {}
        return self.repo.get_page_by_slug(slug, session=session)

    def maintain_links(self, page: dict[str, Any] | str, session=None) -> list[str]:
        """Recompute the outgoing edge set of ``page`` from its current content.

        Returns the ids of the linked pages. Unresolved names are left out
        (see :meth:`find_broken_links`); a link to the page itself is dropped.
        Callers hold ``repo.tree_lock()`` so a target cannot be deleted
        between resolution and the edge write.
        """
        page_doc = self._coerce_page(page, session=session)
        page_id = str(page_doc.get("id") or "")
        if page_doc.get("is_folder") or not page_doc.get("content"):
            self.repo.clear_outgoing_links(page_id, session=session)
            return []

        names = extract_link_names(page_doc.get("content"))
        logger.debug("Found %d internal links in page '%s': %s", len(names), page_doc.get("title"), sorted(names))
        target_ids: set[str] = set()
        for name in names:
            target = self.resolve_link_target(name, session=session)
            if not target:
                logger.debug("Linked page not found: '%s' (broken link)", name)
                continue
            target_id = str(target.get("id") or "")
            if target_id == page_id:
                continue
            target_ids.add(target_id)
        self.repo.touch_pages(target_ids, session=session)
        self.repo.replace_outgoing_links(page_id, target_ids, session=session)
        return sorted(target_ids)

    def clear_links(self, page_id: str, session=None) -> int:
        return self.repo.delete_links_touching(page_id, session=session)

    def get_backlinks(self, page_id: str) -> list[dict[str, Any]]:
        self._require_page(page_id)
        return sort_by_title(self.repo.pages_by_ids(self.repo.linking_source_ids(page_id)))

    def get_outgoing_links(self, page_id: str) -> list[dict[str, Any]]:
        self._require_page(page_id)
        return sort_by_title(self.repo.pages_by_ids(self.repo.outgoing_target_ids(page_id)))

    def count_backlinks(self, page_id: str) -> int:
        return self.repo.count_links_to(page_id)

    def find_broken_links(self, page: dict[str, Any] | str) -> list[str]:
        page_doc = self._coerce_page(page)
        if page_doc.get("is_folder"):
            return []
        return sorted(
            name
            for name in extract_link_names(page_doc.get("content"))
            if not self.resolve_link_target(name)
        )

    def find_orphan_pages(self) -> list[dict[str, Any]]:
        linked = self.repo.linked_target_ids()
        return sort_by_title(page for page in self.repo.list_root_pages() if page.get("id") not in linked)

    def reparse_all(self, job_id: str | None = None) -> dict[str, Any]:
        """Recompute every page's outgoing links; one page failing never stops the batch."""
        page_ids = self.repo.list_page_ids()
        report: dict[str, Any] = {"total": len(page_ids), "processed": 0, "failed_page_ids": []}
        logger.info("Reparsing backlinks for %d pages", len(page_ids))
        if job_id:
            self.repo.update_job(job_id, status="running", total=len(page_ids), started_at=utc_now())

        for index, page_id in enumerate(page_ids, 1):
            try:
                with self.repo.tree_lock(), self.repo.transaction() as session:
                    page = self.repo.get_page_by_id(page_id, session=session)
                    if page:
                        self.maintain_links(page, session=session)
                report["processed"] += 1
            except Exception:
                logger.warning("Failed to reparse links for page %s", page_id, exc_info=True)
                report["failed_page_ids"].append(page_id)
            if job_id and index % JOB_PROGRESS_EVERY == 0:
                self.repo.update_job(job_id, processed=report["processed"], failed_page_ids=list(report["failed_page_ids"]))

        logger.info(
            "Finished reparsing backlinks: %d processed, %d failed",
            report["processed"],
            len(report["failed_page_ids"]),
        )
        if job_id:
            self.repo.update_job(
                job_id,
                status="completed",
                processed=report["processed"],
                failed_page_ids=list(report["failed_page_ids"]),
                finished_at=utc_now(),
            )
        return report

    def _run_reparse_job(self, job_id: str) -> dict[str, Any]:
        try:
            return self.reparse_all(job_id=job_id)
        except Exception as exc:
            logger.exception("Backlink reparse job %s failed", job_id)
            self.repo.update_job(job_id, status="failed", error=str(exc), finished_at=utc_now())
            raise

    def start_reparse_all(self, executor: Executor | None = None) -> dict[str, Any]:
        """Queue :meth:`reparse_all` in the background and return its job record.

        Poll :meth:`get_job` with the returned id for progress.
        """
        job = self.repo.create_job(REPARSE_JOB_KIND)
        (executor or _default_executor()).submit(self._run_reparse_job, job["id"])
        logger.info("Queued backlink reparse job %s", job["id"])
        return job

    def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.repo.get_job(job_id)
        if not job:
            raise NotFoundError("job", job_id)
        return job
