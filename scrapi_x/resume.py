"""Resume guard: decides whether a post has already been harvested."""
from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .core import PostPaths

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".jpg", ".png", ".gif")


class PostStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    DONE = "done"


def load_status(paths: PostPaths) -> dict[str, Any] | None:
    path = paths.status_record
    if not path.exists():
        return None
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to parse status record %s: %s", path, exc)
        return None
    if not isinstance(record, dict) or record.get("status") not in {s.value for s in PostStatus}:
        logger.warning("Ignoring malformed status record %s", path)
        return None
    return record


def write_status(paths: PostPaths, status: PostStatus, steps: list[str] | None = None) -> None:
    """Persist the post's status atomically (temp file + rename)."""
    path = paths.status_record
    path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "post_id": paths.post_id,
        "status": status.value,
        "steps": list(steps or []),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{paths.post_id}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(record, fh, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def existing_artifacts(paths: PostPaths) -> list[Path]:
    """List the artifacts already present for this post."""
    found = [
        candidate
        for candidate in (
            paths.text,
            paths.video,
            paths.video_info,
            paths.video_error,
            paths.video_player,
            paths.rate_limited,
        )
        if candidate.exists()
    ]
    if paths.author_dir.is_dir():
        prefix = f"{paths.post_id}-"
        for entry in sorted(paths.author_dir.iterdir()):
            if not entry.name.startswith(prefix) or entry.suffix.lower() not in IMAGE_SUFFIXES:
                continue
            index = entry.stem[len(prefix):]
            if index.isdigit():
                found.append(entry)
    return found


def is_post_done(paths: PostPaths) -> bool:
    """Return ``True`` when the post must not be processed again.

    A status record, when present, is authoritative. Without one the coarse
    artifact check applies: any single artifact marks the post as done.
    """
    record = load_status(paths)
    if record is not None:
        done = record["status"] == PostStatus.DONE.value
        if done:
            logger.info("Skipping post %s - status record marks it done", paths.post_id)
        else:
            logger.info(
                "Post %s was left %s by an earlier run; processing again",
                paths.post_id,
                record["status"],
            )
        return done

    artifacts = existing_artifacts(paths)
    if artifacts:
        logger.info(
            "Skipping post %s - already processed (found %s)",
            paths.post_id,
            ", ".join(path.name for path in artifacts),
        )
        return True
    return False


__all__ = [
    "PostStatus",
    "existing_artifacts",
    "is_post_done",
    "load_status",
    "write_status",
]
