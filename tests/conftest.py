import os

import pytest

os.environ.setdefault("MONGODB_URI", "mongomock://localhost")
os.environ.setdefault("WIKI_USE_TRANSACTIONS", "false")
os.environ.setdefault("WIKI_AUDIT_ENABLED", "true")

from db_mongo import get_db
from server.src.modules.wiki_access import AccessResolver
from server.src.modules.wiki_config import get_wiki_settings
from server.src.modules.wiki_hierarchy import PageHierarchy
from server.src.modules.wiki_links import BacklinkGraph
from server.src.modules.wiki_repo import WikiMongoRepo


@pytest.fixture(autouse=True)
def clean_state():
    get_wiki_settings.cache_clear()
    db = get_db()
    for name in db.list_collection_names():
        db.drop_collection(name)
    yield
    get_wiki_settings.cache_clear()


@pytest.fixture
def repo():
    return WikiMongoRepo()


@pytest.fixture
def links(repo):
    return BacklinkGraph(repo)


@pytest.fixture
def hierarchy(repo, links):
    return PageHierarchy(repo, links)


@pytest.fixture
def access(repo):
    return AccessResolver(repo)


@pytest.fixture
def no_lock_wait(monkeypatch):
    monkeypatch.setenv("WIKI_LOCK_WAIT_MS", "0")
    get_wiki_settings.cache_clear()
