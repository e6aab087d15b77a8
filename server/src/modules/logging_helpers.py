import logging
from typing import Any

from server.src.modules.wiki_config import get_wiki_settings
from server.src.modules.wiki_service import utc_now

WIKI_AUDIT_LOGS_COL = "wiki_audit_logs"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger("wiki")

def write_audit(db, action: str, username: str | None, page_id: str | None, before: Any = None, after: Any = None, session=None) -> None:
    if not get_wiki_settings().audit_enabled:
        return
    db[WIKI_AUDIT_LOGS_COL].insert_one(
        {
            "ts": utc_now(),
            "user": username,
            "action": action,
            "page_id": page_id,
            "before": before,
            "after": after,
        },
        session=session,
    )
