import logging
from contextvars import ContextVar

current_run = ContextVar('current_run', default='-')


class RunIdFilter(logging.Filter):
    def filter(self, record):
        # Stamp the sitemap run id so generation logs can be grepped per run
        if not hasattr(record, 'run_id'):
            record.run_id = current_run.get()
        return True
