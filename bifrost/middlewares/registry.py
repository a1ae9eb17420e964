"""Registry of middleware factories, looked up by their kind name."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from bifrost.request import Handler

MiddlewareFactory = Callable[[Mapping[str, Any]], Handler]

_factories: dict[str, MiddlewareFactory] = {}


class MiddlewareExistsError(ValueError):
    """Raised when a middleware kind is registered twice."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"middleware handler '{kind}' already exists")
        self.kind = kind


def register_middleware(kind: str, factory: MiddlewareFactory) -> None:
    """Register ``factory`` as the builder for middlewares of ``kind``."""
    if kind in _factories:
        raise MiddlewareExistsError(kind)
    _factories[kind] = factory


def find_handler_by_type(kind: str) -> Optional[MiddlewareFactory]:
    """Return the factory registered for ``kind``, or ``None``."""
    return _factories.get(kind)


def _fold(name: str) -> str:
    return name.replace("_", "").lower()


def _option(params: Mapping[str, Any], name: str, default: Any = None) -> Any:
    """Look up ``name`` in ``params`` ignoring case and underscores."""
    if name in params:
        return params[name]
    wanted = _fold(name)
    for key, value in params.items():
        if isinstance(key, str) and _fold(key) == wanted:
            return value
    return default


def _section(params: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = _option(params, name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{name} must be a mapping")
    return value


def _string_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{name} must be a list of strings")
    if not all(isinstance(item, str) for item in value):
        raise ValueError(f"{name} must be a list of strings")
    return list(value)


def _string_map(value: Any, name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{name} must be a mapping of strings")
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
        raise ValueError(f"{name} must be a mapping of strings")
    return dict(value)


def _normalize_path(path: str) -> str:
    """Give ``path`` a leading slash, collapse repeated slashes, resolve dot segments."""
    if not path.startswith("/"):
        path = "/" + path
    trailing = path.endswith(("/", "/.", "/.."))
    segments: list[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)
    result = "/" + "/".join(segments)
    if trailing and result != "/":
        result += "/"
    return result