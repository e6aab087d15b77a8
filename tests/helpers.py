from server.src.modules.wiki_auth import Requester, requester_from_user


def make_user(repo, username: str, *roles: str, enabled: bool = True, locked: bool = False) -> Requester:
    doc = repo.create_user(username=username, roles=roles, enabled=enabled, locked=locked)
    return requester_from_user(doc)


def titles(pages) -> list[str]:
    return [page["title"] for page in pages]
