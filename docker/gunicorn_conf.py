# Gunicorn configuration for Sourdough
# Exactly one worker at a time runs the APScheduler (scheduled backups and
# retention). Ownership is an exclusive flock held for the worker's
# lifetime, so a respawned worker takes over when the owner dies.

import os
import fcntl
import logging

logger = logging.getLogger('gunicorn.error')

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get('WEB_CONCURRENCY', '2'))
# Backups and restores of large archives run inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '600'))

SCHEDULER_LOCK_FILE = os.path.join(os.environ.get('DATA_DIR', '/data'), 'temp', 'scheduler.lock')

_scheduler_lock_fd = None


def post_fork(server, worker):
    """
    Called in the worker before the application is loaded.

    Sets SCHEDULER_WORKER, which create_app() reads to decide whether this
    process starts the scheduler.
    """
    global _scheduler_lock_fd

    os.makedirs(os.path.dirname(SCHEDULER_LOCK_FILE), exist_ok=True)
    fd = os.open(SCHEDULER_LOCK_FILE, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid}: HTTP worker (scheduler owned elsewhere)")
        return

    _scheduler_lock_fd = fd
    os.environ['SCHEDULER_WORKER'] = 'true'
    logger.info(f"Worker PID {worker.pid}: designated scheduler owner")
