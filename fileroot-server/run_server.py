#!/usr/bin/env python3
"""Entry point: serve the file root API.

Requests are handled on werkzeug's threaded server (one thread per request),
so a long copy or zip download never stalls unrelated requests.
"""

from app import SETTINGS_EXTENSION, create_app
from services.config import Settings
from services.logging_setup import core_log


def main() -> None:
    settings = Settings.from_env()
    app = create_app(settings)
    settings = app.extensions[SETTINGS_EXTENSION]
    core_log("info", "File manager server running", url=f"http://{settings.host}:{settings.port}")
    core_log("info", "Managing directory", root=settings.root_dir)
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
