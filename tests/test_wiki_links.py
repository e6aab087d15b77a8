from concurrent.futures import ThreadPoolExecutor

import pytest

from server.src.modules.wiki_errors import NotFoundError, ValidationError
from tests.helpers import titles


def test_backlinks_follow_content_and_delete(hierarchy, links):
    target = hierarchy.create("Target")
    source = hierarchy.create("Source", "See [[Target]].")
    assert titles(links.get_backlinks(target["id"])) == ["Source"]
    assert titles(links.get_outgoing_links(source["id"])) == ["Target"]

    hierarchy.delete(target["id"])
    assert links.get_outgoing_links(source["id"]) == []

    hierarchy.create("Target")
    assert links.get_outgoing_links(source["id"]) == []
    assert links.find_broken_links(source["id"]) == []

    resaved = hierarchy.update(source["id"], "Source", "See [[Target]]. Again.")
    assert titles(links.get_outgoing_links(resaved["id"])) == ["Target"]


def test_display_text_slug_fallback_and_self_links(hierarchy, links):
    hierarchy.create("Getting Started")
    hierarchy.create("FAQ")
    page = hierarchy.create(
        "Home",
        "[[ getting started | Start here ]] and [[FAQ]] [[FAQ|again]] [[Home]] [[Missing Page]] [[]]",
    )
    assert titles(links.get_outgoing_links(page["id"])) == ["FAQ", "Getting Started"]
    assert links.find_broken_links(page["id"]) == ["Missing Page"]
    assert links.get_backlinks(page["id"]) == []


def test_resave_is_idempotent(hierarchy, links, repo):
    hierarchy.create("B")
    a = hierarchy.create("A", "[[B]]")
    hierarchy.update(a["id"], "A", "[[B]] [[B]]")
    hierarchy.update(a["id"], "A", "[[B]]")
    assert repo.outgoing_target_ids(a["id"]) == [hierarchy.get_page_by_title("B")["id"]]


def test_removing_reference_drops_edge(hierarchy, links):
    target = hierarchy.create("T")
    source = hierarchy.create("S", "[[T]]")
    hierarchy.update(source["id"], "S", "no links now")
    assert links.get_backlinks(target["id"]) == []
    assert links.count_backlinks(target["id"]) == 0


def test_backlinks_equal_reverse_of_outgoing(hierarchy, links, repo):
    x = hierarchy.create("X")
    hierarchy.create("P1", "[[X]]")
    hierarchy.create("P2", "[[X]] [[P1]]")
    hierarchy.create("P3", "nothing")
    expected = {
        page["id"]
        for page in repo.list_all_pages()
        if x["id"] in repo.outgoing_target_ids(page["id"])
    }
    assert {page["id"] for page in links.get_backlinks(x["id"])} == expected
    assert titles(links.get_backlinks(x["id"])) == ["P1", "P2"]


def test_orphan_pages_are_unlinked_roots(hierarchy, links):
    linked = hierarchy.create("Linked")
    hierarchy.create("Lonely")
    folder = hierarchy.create("Folder", is_folder=True)
    hierarchy.create("Nested", "[[Linked]]", parent_id=folder["id"])
    assert titles(links.find_orphan_pages()) == ["Folder", "Lonely"]
    assert linked["id"] not in {page["id"] for page in links.find_orphan_pages()}


def test_backlinks_of_missing_page(links):
    with pytest.raises(NotFoundError):
        links.get_backlinks("missing")


def test_reparse_all_relinks_and_isolates_failures(hierarchy, links, repo, monkeypatch):
    source = hierarchy.create("Source", "[[Later]]")
    other = hierarchy.create("Other", "[[Later]]")
    later = hierarchy.create("Later")
    assert links.get_backlinks(later["id"]) == []

    original = links.maintain_links

    def flaky(page, session=None):
        if page["id"] == other["id"]:
            raise RuntimeError("boom")
        return original(page, session=session)

    monkeypatch.setattr(links, "maintain_links", flaky)
    report = links.reparse_all()
    assert report["total"] == 3
    assert report["processed"] == 2
    assert report["failed_page_ids"] == [other["id"]]
    assert titles(links.get_backlinks(later["id"])) == ["Source"]


def test_background_reparse_job_can_be_polled(hierarchy, links):
    hierarchy.create("Source", "[[Later]]")
    later = hierarchy.create("Later")
    executor = ThreadPoolExecutor(max_workers=1)
    job = links.start_reparse_all(executor=executor)
    executor.shutdown(wait=True)

    finished = links.get_job(job["id"])
    assert finished["status"] == "completed"
    assert finished["total"] == 2
    assert finished["processed"] == 2
    assert titles(links.get_backlinks(later["id"])) == ["Source"]
    with pytest.raises(NotFoundError):
        links.get_job("missing")


def test_link_write_cannot_interleave_with_target_delete(hierarchy, links, repo, monkeypatch, no_lock_wait):
    target = hierarchy.create("Target")
    original = repo.replace_outgoing_links

    def replace_while_target_is_deleted(source_page_id, target_page_ids, session=None):
        with pytest.raises(ValidationError):
            hierarchy.delete(target["id"])
        return original(source_page_id, target_page_ids, session=session)

    monkeypatch.setattr(repo, "replace_outgoing_links", replace_while_target_is_deleted)
    hierarchy.create("Source", "See [[Target]].")

    assert titles(links.get_backlinks(target["id"])) == ["Source"]
    assert repo.get_page_by_id(target["id"])["tree_rev"] == 1

    hierarchy.delete(target["id"])
    assert repo.links.count_documents({"target_page_id": target["id"]}) == 0
