from functools import lru_cache
from urllib.parse import urlparse
from pymongo import MongoClient
from pymongo.database import Database
from settings import settings


def is_mock_uri(uri: str | None = None) -> bool:
    return str(uri if uri is not None else settings.mongodb_uri or "").startswith("mongomock://")

@lru_cache
def get_client() -> MongoClient:
    uri = settings.mongodb_uri
    if not uri or "xxxx.mongodb.net" in uri or "example.com" in uri:
        raise RuntimeError("MONGODB_URI is missing or still a placeholder.")
    if is_mock_uri(uri):
        import mongomock
        return mongomock.MongoClient()
    return MongoClient(uri)

def _db_name_from_uri_fallback() -> str:
    u = urlparse(settings.mongodb_uri or "")
    return (u.path or "").lstrip("/") or settings.mongodb_db

def get_db() -> Database:
    return get_client()[_db_name_from_uri_fallback()]
