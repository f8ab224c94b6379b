"""JSON output for the run records.

Records are frozen attrs classes holding tuples. A list inside a record means a mutable value slipped in, so the
serializer refuses it instead of quietly writing it out.
"""

import json
from enum import Enum
from importlib.metadata import version
from pathlib import PosixPath
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional

import attr
from yasoo import Serializer

assert (
    version("yasoo") == "0.12.6"
), "RecordSerializer overrides a private yasoo method, check it before moving to another yasoo version"


class SerializationError(Exception):
    pass


class RecordSerializer(Serializer):
    def _serialize_iterable(
        self,
        obj: Iterable[object],
        type_key: Any,
        fully_qualified_types: Any,
        preserve_iterable_types: Any,
        stringify_dict_keys: Any,
    ) -> List[object]:
        if not isinstance(obj, (tuple, frozenset)):
            raise SerializationError(f"Records must hold tuples, found a {type(obj).__name__}: {obj}")
        return [
            self._serialize(item, type_key, fully_qualified_types, preserve_iterable_types, stringify_dict_keys)
            for item in obj
        ]


SERIALIZER = RecordSerializer()


@SERIALIZER.register()
def _path_to_json(path: PosixPath) -> Dict[str, str]:
    return {"value": str(path)}


_LEAF_TYPES = (type(None), bool, int, float, str, Enum, PosixPath)


def find_unserializable(obj: Any, path: str = "$") -> Optional[str]:
    """Where in `obj` the first value the serializer can't handle sits, if anywhere.

    >>> @attr.s(auto_attribs=True, frozen=True)
    ... class Sample:
    ...     names: Any
    >>> find_unserializable(Sample(names=("a", "b")))
    >>> find_unserializable(Sample(names=("a", {1, 2})))
    '$.names[1] (set)'
    """
    if isinstance(obj, _LEAF_TYPES):
        return None
    if attr.has(type(obj)):
        children: Iterable = ((f"{path}.{field.name}", getattr(obj, field.name)) for field in attr.fields(type(obj)))
    elif isinstance(obj, Mapping):
        children = ((f"{path}.{key}", value) for key, value in obj.items())
    elif isinstance(obj, (tuple, frozenset)):
        children = ((f"{path}[{index}]", value) for index, value in enumerate(obj))
    else:
        return f"{path} ({type(obj).__name__})"
    for child_path, child in children:
        location = find_unserializable(child, child_path)
        if location is not None:
            return location
    return None


def serialize_to_dict(obj: Any) -> Dict[str, Any]:
    try:
        data = SERIALIZER.serialize(obj, type_key=None)
    except Exception as e:
        location = find_unserializable(obj)
        where = "" if location is None else f" at {location}"
        raise SerializationError(f"Could not serialize {type(obj).__name__}{where}: {e}") from e
    assert isinstance(data, dict), f"{type(obj).__name__} is not a record"
    return data


def serialize_to_json(obj: Any, indent: Optional[int] = None, sort_keys: bool = False) -> str:
    return json.dumps(serialize_to_dict(obj), indent=indent, sort_keys=sort_keys)
