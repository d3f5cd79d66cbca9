"""Parser for the parenthesized message content used by ``publish``.

``(type post) (text hello) (value.content hi)`` becomes::

    {"type": "post", "text": "hello", "value": {"content": "hi"}}

Groups without a value, like ``(beep)``, are ignored.
"""

from __future__ import annotations

import re
from typing import Any

_GROUP_PATTERN = re.compile(r"\((\S+)\s([^()]+?)\)")


def parse_content(line: str) -> dict[str, Any]:
    content: dict[str, Any] = {}
    for key, value in _GROUP_PATTERN.findall(line):
        *parents, leaf = key.split(".")
        target = content
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[leaf] = value
    return content
