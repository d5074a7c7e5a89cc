"""
WSGI config for Project project.

It exposes the WSGI callable as a module-level variable named ``application``.

For more information on this file, see
https://docs.djangoproject.com/en/5.0/howto/deployment/wsgi/
"""

import logging
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'Project.settings')

application = get_wsgi_application()

# Make a missing or misplaced record directory obvious in the server logs.
from Caplog.settings import get_caplog_settings  # noqa: E402

_caplog = get_caplog_settings()
logging.getLogger("caplog.startup").info(
    "Caplog startup log_dir=%s max_age_days=%s excluded_roles=%s",
    _caplog.log_dir or "(unset)",
    _caplog.max_age_days,
    sorted(_caplog.excluded_roles),
)
