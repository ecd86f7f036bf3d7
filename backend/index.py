from __future__ import annotations

from typing import Callable

from api import create_app

_APP: Callable | None = None


def _load_app() -> Callable:
    global _APP
    if _APP is not None:
        return _APP
    _APP = create_app()
    return _APP


def app(environ, start_response):
    backend = _load_app()
    return backend(environ, start_response)
