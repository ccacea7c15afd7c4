from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from gridstream.config import settings
from gridstream.errors import StoreError
from gridstream.events import log_event, session_logger
from gridstream.store import ChunkStore


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def collect_orphans(store: ChunkStore, root: str, grace_seconds: int | None = None) -> dict[str, int]:
    """Delete chunk sets that have no metadata record.

    Failed or abandoned writes leave such chunks behind. Only sets whose
    newest chunk is older than the grace period are touched, so uploads still
    in flight survive.
    """
    grace = settings.orphan_grace_seconds if grace_seconds is None else grace_seconds
    older_than = _utc_now() - timedelta(seconds=grace)

    orphaned = store.orphaned_file_ids(root, older_than)
    chunks_deleted = 0
    failures = 0
    for file_id in orphaned:
        try:
            chunks_deleted += store.delete_chunks(root, file_id)
        except StoreError as exc:
            failures += 1
            log_event(
                {"event": "orphan_cleanup_failed", "root": root, "file_id": file_id, "detail": str(exc)},
                logger=session_logger,
                level=logging.WARNING,
            )

    return {
        "orphaned_files": len(orphaned),
        "chunks_deleted": chunks_deleted,
        "failures": failures,
    }
