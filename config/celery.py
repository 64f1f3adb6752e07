# config/celery.py

import os
from celery import Celery
import logging

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('egura')

# Celery settings live in Django settings under the CELERY_ namespace
app.config_from_object('django.conf:settings', namespace='CELERY')

# Picks up tasks.py from every installed app
app.autodiscover_tasks()


@app.task(bind=True)
def debug_task(self):
    logger = logging.getLogger(__name__)
    logger.debug(f'Request: {self.request!r}')
