"""
Retention policy enforcement for backups.

select_for_deletion() is a pure function over archive listings;
apply_retention_policy() runs it against one destination and deletes the
selected archives, carrying on past individual deletion failures.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .archive import is_valid_archive_filename, parse_archive_timestamp
from .config import RetentionPolicy

logger = logging.getLogger(__name__)


def archive_timestamp(archive: Dict[str, Any]) -> Optional[datetime]:
    """
    Age of an archive: the timestamp in its filename, falling back to the
    storage last_modified value. Naive datetimes are taken as UTC.
    """
    stamp = parse_archive_timestamp(archive.get('filename', ''))
    if stamp is None:
        stamp = archive.get('last_modified')
        if not isinstance(stamp, datetime):
            return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def select_for_deletion(archives: Iterable[Dict[str, Any]], policy: RetentionPolicy,
                        now: Optional[datetime] = None, exclude: Iterable[str] = ()) -> List[Dict[str, Any]]:
    """
    Pick the archives a retention policy allows deleting.

    An archive is eligible when it is older than keep_days AND not among the
    newest keep_count; a criterion set to None is ignored, and with both
    unset nothing is eligible. The result never leaves fewer than
    min_backups archives. Archives of unknown age and excluded filenames
    are kept but still count towards the floor.

    Args:
        archives: Listing entries with 'filename' and optional 'last_modified'
        policy: Retention parameters (enabled flag is not consulted here)
        now: Reference time (defaults to current UTC time)
        exclude: Filenames that must not be selected

    Returns:
        Entries to delete, oldest first
    """
    if policy.keep_days is None and policy.keep_count is None:
        return []

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    excluded = set(exclude)

    archives = list(archives)
    dated = [(archive_timestamp(a), a) for a in archives]
    known = sorted((item for item in dated if item[0] is not None), key=lambda item: item[0], reverse=True)

    cutoff = now - timedelta(days=policy.keep_days) if policy.keep_days is not None else None

    eligible = []
    for position, (stamp, archive) in enumerate(known):
        if archive.get('filename') in excluded:
            continue
        if cutoff is not None and stamp >= cutoff:
            continue
        if policy.keep_count is not None and position < policy.keep_count:
            continue
        eligible.append(archive)

    allowed = max(0, len(archives) - max(0, policy.min_backups))
    eligible.reverse()
    return eligible[:allowed]


def apply_retention_policy(destination, policy: RetentionPolicy, exclude: Iterable[str] = (),
                           now: Optional[datetime] = None,
                           log: Optional[Callable[[str], None]] = None) -> Dict[str, Any]:
    """
    Delete the archives a policy selects from one destination.

    Only entries named like archives this service writes are candidates,
    so other zip files sharing the location are never touched. Listing
    failures end the sweep for that destination; deletion failures are
    recorded and the sweep continues.

    Returns:
        {'destination', 'deleted': [...], 'failed': [...], 'error': str | None}
    """
    log = log or logger.info
    result = {'destination': destination.name, 'deleted': [], 'failed': [], 'error': None}

    try:
        listing = destination.list()
    except Exception as e:
        message = f"Retention skipped for {destination.name}: cannot list archives ({e})"
        logger.warning(message)
        log(message)
        result['error'] = str(e)
        return result

    archives = [a for a in listing if is_valid_archive_filename(a.get('filename', ''))]
    selected = select_for_deletion(archives, policy, now=now, exclude=exclude)
    if not selected:
        log(f"Retention on {destination.name}: nothing to delete ({len(archives)} archives)")
        return result

    for archive in selected:
        filename = archive['filename']
        try:
            if destination.delete(filename):
                result['deleted'].append(filename)
                log(f"Retention deleted {filename} from {destination.name}")
            else:
                log(f"Retention: {filename} already gone from {destination.name}")
        except Exception as e:
            logger.error(f"Retention failed to delete {filename} from {destination.name}: {e}")
            log(f"Failed to delete {filename} from {destination.name}: {e}")
            result['failed'].append({'filename': filename, 'error': str(e)})

    return result
