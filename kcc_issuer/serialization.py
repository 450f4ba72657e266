"""JSON serialization that breaks reference cycles.

Every dict or list is emitted the first time it is reached. Any later
reference to the same object is dropped: a dict entry pointing at it is left
out and a list slot pointing at it becomes ``null``. This also drops repeated
references that are not cycles, so two keys sharing one nested object keep
only the first copy.
"""
import json
from typing import Any

_DROP = object()


def remove_circular_references(value: Any) -> Any:
    seen = set()

    def walk(item):
        if isinstance(item, (dict, list, tuple)):
            if id(item) in seen:
                return _DROP
            seen.add(id(item))
        if isinstance(item, dict):
            result = {}
            for key, child in item.items():
                stripped = walk(child)
                if stripped is not _DROP:
                    result[key] = stripped
            return result
        if isinstance(item, (list, tuple)):
            return [None if stripped is _DROP else stripped for stripped in map(walk, item)]
        return item

    stripped = walk(value)
    return None if stripped is _DROP else stripped


def dumps_without_cycles(value: Any, **kwargs) -> str:
    return json.dumps(remove_circular_references(value), **kwargs)
