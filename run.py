# run.py
"""Development entry point; production runs ``storefront.main:app`` under a WSGI server."""
import logging

from storefront.config import Config
from storefront.main import app

if __name__ == "__main__":
    logging.getLogger(__name__).info("Starting %s (%s)", Config.APP_NAME, Config.APP_ENV)
    app.run(debug=Config.DEBUG, host=Config.FLASK_RUN_HOST, port=Config.FLASK_RUN_PORT)
