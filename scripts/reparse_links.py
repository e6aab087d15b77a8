#!/usr/bin/env python
from __future__ import annotations

import argparse
import os
import sys

# add project root (one level up from /scripts) to import path
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from server.src.modules.wiki_links import REPARSE_JOB_KIND, BacklinkGraph
from server.src.modules.wiki_repo import WikiMongoRepo


def reparse() -> int:
    links = BacklinkGraph(WikiMongoRepo())
    job = links.repo.create_job(REPARSE_JOB_KIND)
    report = links.reparse_all(job_id=job["id"])
    print(f"Reparsed {report['processed']} of {report['total']} pages (job {job['id']})")
    for page_id in report["failed_page_ids"]:
        print(f"failed: {page_id}")
    return 1 if report["failed_page_ids"] else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild every wiki link edge from current page content.")
    parser.parse_args()
    raise SystemExit(reparse())


if __name__ == "__main__":
    main()
