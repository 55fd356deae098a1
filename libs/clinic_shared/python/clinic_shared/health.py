import logging
import os
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse


log = logging.getLogger("clinic.health")


def add_standard_health(app: FastAPI, db_ping: Optional[Callable[[], None]] = None, env_key: str = "ENV"):
    """Mount ``/health``.

    With ``db_ping`` the endpoint also reports whether the database answers,
    and answers 503 when it does not.
    """

    @app.get("/health")
    def _health():
        body = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": app.version,
        }
        if db_ping is None:
            return body
        try:
            db_ping()
        except Exception as e:
            log.warning("health check: database unreachable: %s", e)
            body.update(status="degraded", db="down")
            return JSONResponse(status_code=503, content=body)
        body["db"] = "ok"
        return body
