from contextlib import contextmanager

import pytest

from db_mongo import get_db
from server.src.modules.wiki_access import AccessResolver, GrantSubject
from server.src.modules.wiki_config import get_wiki_settings
from server.src.modules.wiki_hierarchy import PageHierarchy
from server.src.modules.wiki_repo import WikiMongoRepo
from tests.helpers import make_user


class RecordingSession:
    def __init__(self, client):
        self.client = client
        self.in_transaction = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def start_transaction(self):
        self.client.events.append("start_transaction")
        self.in_transaction = True
        try:
            yield
        finally:
            self.in_transaction = False


class RecordingClient:
    """Hands out sessions and remembers which session every collection call received."""

    def __init__(self):
        self.events = []
        self.calls = []
        self.sessions = []

    def start_session(self):
        self.events.append("start_session")
        session = RecordingSession(self)
        self.sessions.append(session)
        return session

    def open_transaction(self):
        return next((s for s in self.sessions if s.in_transaction), None)

    def reset(self):
        self.events.clear()
        self.calls.clear()


class RecordingCollection:
    # mongomock rejects sessions, so the session is recorded and stripped before delegating
    def __init__(self, inner, name, client):
        self._inner = inner
        self._name = name
        self._client = client

    def __getattr__(self, attr):
        target = getattr(self._inner, attr)
        if not callable(target):
            return target

        def call(*args, **kwargs):
            session = kwargs.pop("session", None)
            self._client.calls.append((self._name, attr, session, self._client.open_transaction()))
            return target(*args, **kwargs)

        return call


class RecordingDatabase:
    def __init__(self, inner, client):
        self._inner = inner
        self.client = client

    def __getitem__(self, name):
        return RecordingCollection(self._inner[name], name, self.client)


@pytest.fixture
def recorded(monkeypatch):
    monkeypatch.setenv("WIKI_USE_TRANSACTIONS", "true")
    get_wiki_settings.cache_clear()
    client = RecordingClient()
    repo = WikiMongoRepo(db=RecordingDatabase(get_db(), client))
    return client, repo


def assert_one_transaction_threaded(client, *expected_writes):
    assert client.events == ["start_session", "start_transaction"]
    inside = [(name, method, session, open_tx) for name, method, session, open_tx in client.calls if open_tx is not None]
    assert inside
    for name, method, session, open_tx in inside:
        assert session is open_tx, f"{name}.{method} ran in the transaction without its session"
    methods = {(name, method) for name, method, _, _ in inside}
    for write in expected_writes:
        assert write in methods


def test_transaction_flag_opens_session_and_transaction(recorded):
    client, repo = recorded
    client.reset()
    with repo.transaction() as session:
        assert session is client.sessions[0]
        assert session.in_transaction
    assert client.events == ["start_session", "start_transaction"]
    assert not client.sessions[0].in_transaction


def test_create_threads_session(recorded):
    client, repo = recorded
    hierarchy = PageHierarchy(repo)
    parent = hierarchy.create("Parent")
    client.reset()

    hierarchy.create("Child", "See [[Parent]]", parent_id=parent["id"])

    assert_one_transaction_threaded(
        client,
        ("wiki_pages", "insert_one"),
        ("wiki_pages", "update_many"),
        ("wiki_links", "insert_many"),
    )


def test_move_threads_session(recorded):
    client, repo = recorded
    hierarchy = PageHierarchy(repo)
    a = hierarchy.create("A")
    b = hierarchy.create("B")
    client.reset()

    hierarchy.move(b["id"], a["id"])

    assert_one_transaction_threaded(client, ("wiki_pages", "update_one"), ("wiki_audit_logs", "insert_one"))
    assert repo.get_page_by_id(b["id"])["parent_id"] == a["id"]


def test_delete_threads_session(recorded):
    client, repo = recorded
    hierarchy = PageHierarchy(repo)
    parent = hierarchy.create("Parent")
    hierarchy.create("Child", parent_id=parent["id"])
    client.reset()

    hierarchy.delete(parent["id"])

    assert_one_transaction_threaded(
        client,
        ("wiki_pages", "update_many"),
        ("wiki_links", "delete_many"),
        ("wiki_page_grants", "delete_many"),
        ("wiki_pages", "delete_one"),
        ("wiki_audit_logs", "insert_one"),
    )


def test_grant_threads_session(recorded):
    client, repo = recorded
    hierarchy = PageHierarchy(repo)
    access = AccessResolver(repo)
    admin = make_user(repo, "admin", "ADMIN")
    viewer = make_user(repo, "viewer", "VIEWER")
    page = hierarchy.create("Locked Down")
    client.reset()

    access.grant(admin, page["id"], GrantSubject.for_user(viewer.user_id), "VIEW")

    assert_one_transaction_threaded(
        client,
        ("wiki_page_grants", "find_one_and_update"),
        ("wiki_audit_logs", "insert_one"),
    )
    assert access.can_view(viewer, page["id"])
