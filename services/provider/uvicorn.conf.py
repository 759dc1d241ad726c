"""Uvicorn settings for the sandbox provider.

Run ``python uvicorn.conf.py`` from this directory.
"""

import os

host = os.getenv("UVICORN_HOST", "0.0.0.0")
port = int(os.getenv("PORT", "9002"))
# SQLite sessions live in one file; more than one worker needs a server DB.
workers = int(os.getenv("UVICORN_WORKERS", "1"))
loop = "uvloop"  # requires uvicorn[standard]
http = "h11"
log_level = os.getenv("LOG_LEVEL", "info")


def run():
    import uvicorn

    uvicorn.run("main:app", host=host, port=port, workers=workers, loop=loop, http=http, log_level=log_level)


if __name__ == "__main__":
    run()
