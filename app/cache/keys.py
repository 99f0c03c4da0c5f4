"""Cache keys and invalidation tags shared by read paths and mutations."""

import hashlib
import json

from pydantic import BaseModel

STATS_TAG = "stats"
SEARCH_TAG = "search"


def task_tag(task_id: str) -> str:
    return f"task:{task_id}"


def user_tag(owner_id: str) -> str:
    return f"user:{owner_id}"


def _digest(*parts: BaseModel | None) -> str:
    # Only a hash of the query shape goes into the key, never raw values.
    payload = json.dumps(
        [p.model_dump(mode="json") if p is not None else None for p in parts],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


def task_key(task_id: str, owner_id: str) -> str:
    return f"task:{task_id}:owner:{owner_id}"


def list_key(owner_id: str, *parts: BaseModel | None) -> str:
    return f"tasks:list:{owner_id}:{_digest(*parts)}"


def search_key(owner_id: str, term: str, *parts: BaseModel | None) -> str:
    term_hash = hashlib.sha256(term.encode("utf-8")).hexdigest()[:16]
    return f"tasks:search:{owner_id}:{term_hash}:{_digest(*parts)}"


def stats_key(owner_id: str) -> str:
    return f"task-stats:{owner_id}"


def read_tags(owner_id: str, task_id: str | None = None) -> list[str]:
    tags = [user_tag(owner_id)]
    if task_id is not None:
        tags.insert(0, task_tag(task_id))
    return tags


def mutation_tags(owner_id: str, task_ids=()) -> list[str]:
    """Every tag a write for this owner can make stale."""
    return [*(task_tag(t) for t in task_ids), user_tag(owner_id), STATS_TAG, SEARCH_TAG]
