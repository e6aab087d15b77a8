from server.src.modules.wiki_auth import ANONYMOUS, MongoIdentitySource, make_requester, requester_from_user
from tests.helpers import make_user


def test_make_requester_normalizes_roles():
    requester = make_requester(" alice ", ["role_editor", "viewer", ""])
    assert requester.username == "alice"
    assert requester.roles == frozenset({"EDITOR", "VIEWER"})
    assert requester.has_role("ROLE_VIEWER")
    assert requester.is_authenticated
    assert not requester.is_admin


def test_inactive_requesters_are_not_authenticated():
    assert not ANONYMOUS.is_authenticated
    assert not make_requester("bob", ["ADMIN"], locked=True).is_admin
    assert not make_requester("bob", ["ADMIN"], enabled=False).is_authenticated
    assert requester_from_user({}) is ANONYMOUS


def test_mongo_identity_source(repo):
    created = make_user(repo, "carol", "ADMIN")
    source = MongoIdentitySource(repo)
    resolved = source.resolve("carol")
    assert resolved == created
    assert resolved.is_admin
    assert source.resolve("nobody") is ANONYMOUS
    assert source.resolve(None) is ANONYMOUS

    repo.update_user(created.user_id, locked=True)
    assert not source.resolve("carol").is_authenticated
