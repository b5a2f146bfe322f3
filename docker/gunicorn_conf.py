# Gunicorn configuration for Stowage
# Only one worker may own the scheduler, otherwise every worker would create
# the scheduled backup.

import os
import logging

logger = logging.getLogger('gunicorn.error')

wsgi_app = 'stowage:create_app()'
bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))

# Backup and restore requests run synchronously
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '3600'))

# Load the app per worker so SCHEDULER_WORKER is read after it is set below
preload_app = False


def pre_fork(server, worker):
    """
    Designate the first worker (age 1 under gunicorn's counter) as scheduler owner.

    Runs in the arbiter before the fork; the environment is inherited by the
    worker and read by create_app().
    """
    is_owner = worker.age == 1
    os.environ['SCHEDULER_WORKER'] = 'true' if is_owner else 'false'
    logger.info(f"Worker age={worker.age}: scheduler {'owner' if is_owner else 'disabled'}")
