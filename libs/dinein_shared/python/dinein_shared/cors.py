from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware


def parse_origins(allowed: str | None) -> list[str]:
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]
    # Staff dashboard dev server.
    return origins or ["http://localhost:3001", "http://127.0.0.1:3001"]


def configure_cors(app: FastAPI, allowed: str | None) -> None:
    origins = parse_origins(allowed)
    # Browsers reject credentialed requests against a wildcard origin.
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
