"""WSGI entrypoint for the recipe keeper service.

The Flask development server is intentionally not started from this module so
that deployments rely on a WSGI server such as Gunicorn. Local development can
still use ``flask --app main run`` which imports the ``app`` object defined
below.
"""

import logging
import os

from recipe_keeper import create_app

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


__all__ = ["app"]
