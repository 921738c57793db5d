import os
from collections.abc import Callable
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Optional[dict[str, Callable[[], object]]] = None,
):
    """
    Mount GET /health.

    Each entry in `checks` is called on every probe; a raising check marks the
    service as degraded and answers 503 so load balancers stop routing to it.
    """

    @app.get("/health")
    def _health():
        results: dict[str, str] = {}
        ok = True
        for name, check in (checks or {}).items():
            try:
                check()
                results[name] = "ok"
            except Exception as e:
                ok = False
                results[name] = f"error: {e.__class__.__name__}"
        body = {
            "status": "ok" if ok else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if results:
            body["checks"] = results
        return JSONResponse(status_code=200 if ok else 503, content=body)
