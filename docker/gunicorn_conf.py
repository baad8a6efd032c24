# Gunicorn configuration for Hostvault
# Handles scheduler initialization across multiple workers

import os
import logging

logger = logging.getLogger('gunicorn.error')

def post_fork(server, worker):
    """
    Called in the worker process right after it is forked, before the app is loaded.

    Designates the first spawned worker (worker.age == 1) as the scheduler owner.
    Only this worker will initialize and run APScheduler to prevent
    duplicate backup runs.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (the arbiter numbers workers 1, 2, 3, ...)
    """
    # The arbiter increments worker_age before spawning, so the first worker is 1
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")


bind = os.environ.get('HOSTVAULT_BIND', '127.0.0.1:8080')
workers = int(os.environ.get('HOSTVAULT_WORKERS', '2'))
wsgi_app = 'hostvault:create_app()'
