"""SafeRoute backend server.

Run with ``python main.py`` (or the ``saferoute`` console script). Crime data
is loaded and the hazard dispatcher started by the app's startup hook.
"""

import logging

from config import HOST, LOG_LEVEL, PORT

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
)

from routes import app  # noqa: E402


def run():
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
