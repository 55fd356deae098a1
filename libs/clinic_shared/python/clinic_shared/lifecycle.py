from collections.abc import Callable

from fastapi import FastAPI


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """Run ``func`` when the app starts (schema creation, logging, demo seed).

        @register_startup(app)
        def _startup(): ...
    """
    def decorator(func: Callable) -> Callable:
        app.router.on_startup.append(func)
        return func
    return decorator
