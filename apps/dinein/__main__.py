"""
Run the dine-in POS API with uvicorn.

  python -m apps.dinein
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("DINEIN_RELOAD", "false").lower() == "true"
    uvicorn.run(
        "apps.dinein.app.main:app",
        host=os.getenv("DINEIN_HOST", "0.0.0.0"),
        # same port the web clients were built against
        port=int(os.getenv("DINEIN_PORT", "3000")),
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
        log_config=None,
    )


if __name__ == "__main__":
    main()
