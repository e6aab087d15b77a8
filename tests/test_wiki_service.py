import re

import pytest

from server.src.modules.wiki_errors import ValidationError
from server.src.modules.wiki_service import (
    extract_link_names,
    generate_slug,
    is_predefined_role,
    lowest_free_slug,
    normalize_content,
    normalize_permission_type,
    normalize_role_name,
    normalize_title,
    sort_by_title,
    sort_for_tree,
)


@pytest.mark.parametrize(
    "title,expected",
    [
        ("Hello World", "hello-world"),
        ("  Hello,   World!  ", "hello-world"),
        ("Crème brûlée", "creme-brulee"),
        ("Release 2.0 -- notes", "release-2-0-notes"),
        ("!!!", "page"),
        ("", ""),
    ],
)
def test_generate_slug(title, expected):
    assert generate_slug(title) == expected


def test_lowest_free_slug_fills_gaps():
    assert lowest_free_slug("intro", []) == "intro"
    assert lowest_free_slug("intro", ["intro", "intro-2"]) == "intro-1"
    assert lowest_free_slug("intro", ["intro", "intro-1", "intro-2"]) == "intro-3"


def test_extract_link_names_dedupes_and_strips():
    content = "[[Alpha]] [[ Alpha |shown]] [[Beta|b]] [[|nothing]] [[Gamma"
    assert extract_link_names(content) == {"Alpha", "Beta"}
    assert extract_link_names(None) == set()


def test_normalize_title_limits():
    assert normalize_title("  Spaced  ") == "Spaced"
    with pytest.raises(ValidationError) as err:
        normalize_title("")
    assert err.value.field == "title"
    with pytest.raises(ValidationError):
        normalize_title("x" * 256)


def test_normalize_content():
    assert normalize_content("body", is_folder=True) is None
    assert normalize_content(None, is_folder=False) is None
    assert normalize_content("", is_folder=False) == ""
    with pytest.raises(ValidationError):
        normalize_content(42, is_folder=False)


def test_permission_and_role_names():
    assert normalize_permission_type(" full_access ") == "FULL_ACCESS"
    with pytest.raises(ValidationError):
        normalize_permission_type("OWNER")
    assert normalize_role_name("role_editor") == "EDITOR"
    assert is_predefined_role("ROLE_ADMIN")
    assert not is_predefined_role("AUDITOR")


def test_sorting_helpers():
    pages = [
        {"title": "beta", "is_folder": False},
        {"title": "Zoo", "is_folder": True},
        {"title": "Alpha", "is_folder": False},
    ]
    assert [p["title"] for p in sort_for_tree(pages)] == ["Zoo", "Alpha", "beta"]
    assert [p["title"] for p in sort_by_title(pages)] == ["Alpha", "beta", "Zoo"]


URL_SAFE_SLUG = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


@pytest.mark.parametrize("title", ["Hello World", "  --Ünïcödé--  ", "a__b", "日本語", "2024 / Q1 (draft)"])
def test_generated_slugs_are_url_safe(title):
    assert URL_SAFE_SLUG.match(generate_slug(title))
