"""Extension pipeline: map -> filter -> user transform -> output.

User transforms are plain callables registered by the host program under a
name and selected by that name in the configuration. The same composition
shapes the final records and runs the lifecycle hooks (with a no-op output,
where only the transform's side effects matter).
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from .errors import ConfigurationError

Transform = Callable[[Dict[str, Any]], Any]
MapFn = Callable[[Any, Dict[str, Any]], Any]
FilterFn = Callable[[Any, Any], bool]
OutputFn = Callable[[Any, Dict[str, Any]], None]
Pipeline = Callable[..., None]


def passthrough(params: Dict[str, Any]) -> Any:
    return params["item"]


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class ExtensionRegistry:
    """Named user transforms, registered at build time.

    >>> registry = ExtensionRegistry()
    >>> @registry.register("only_titles")
    ... def only_titles(params):
    ...     return {"title": params["item"].get("title")}
    """

    def __init__(self) -> None:
        self._functions: Dict[str, Transform] = {}

    def register(self, name: Optional[str] = None) -> Callable[[Transform], Transform]:
        def decorator(fn: Transform) -> Transform:
            self.add(name or fn.__name__, fn)
            return fn

        return decorator

    def add(self, name: str, fn: Transform) -> None:
        if not callable(fn):
            raise ConfigurationError(f'Extension "{name}" must be callable')
        self._functions[name] = fn

    def resolve(self, name: Optional[str]) -> Transform:
        """Look up a transform; an empty name means passthrough."""
        if name is None or not str(name).strip():
            return passthrough
        try:
            return self._functions[name]
        except KeyError:
            raise ConfigurationError(f'Extension "{name}" is not registered') from None

    def __contains__(self, name: str) -> bool:
        return name in self._functions


def build_pipeline(
    transform: Optional[Transform] = None,
    map_fn: Optional[MapFn] = None,
    filter_fn: Optional[FilterFn] = None,
    output_fn: Optional[OutputFn] = None,
    base_context: Optional[Dict[str, Any]] = None,
) -> Pipeline:
    transform = transform or passthrough
    base = dict(base_context or {})

    def pipeline(raw: Any, context: Optional[Dict[str, Any]] = None) -> None:
        merged = {**base, **(context or {})}
        mapped = map_fn(raw, merged) if map_fn is not None else raw

        for item in _as_list(mapped):
            if filter_fn is not None and not filter_fn(raw, item):
                continue

            result = transform({**merged, "raw": raw, "item": item})

            for out in _as_list(result):
                if out is not None and output_fn is not None:
                    output_fn(out, merged)

    return pipeline
