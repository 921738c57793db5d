from collections.abc import Callable

from fastapi import FastAPI


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a startup hook without FastAPI's deprecated @on_event API.

        @register_startup(app)
        def _create_tables(): ...
    """
    def decorator(func: Callable) -> Callable:
        app.router.on_startup.append(func)
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        app.router.on_shutdown.append(func)
        return func
    return decorator
