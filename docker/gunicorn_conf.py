# Gunicorn configuration for pullkeeper
# Backup timers live in memory, so exactly one worker may own the scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'pullkeeper:create_app()'
bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
# Backup runs happen on scheduler threads, never inside a request
timeout = 120


def post_fork(server, worker):
    """
    Called in each worker right after fork, before the app is loaded.

    Designates the first spawned worker (age 1) as the scheduler owner; the
    app factory reads SCHEDULER_WORKER to decide whether to start timers.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance ('age' counts spawned workers: 1, 2, ...)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
