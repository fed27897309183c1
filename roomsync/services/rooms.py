# roomsync/services/rooms.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

# Known spellings of the configured rooms, keyed by upper-cased input.
ROOM_ALIASES = {
    "P.HỌP LẦU 3": "Phòng họp lầu 3",
    "PHÒNG HỌP LẦU 3": "Phòng họp lầu 3",
    "P.HỌP LẦU 4": "Phòng họp lầu 4",
    "PHÒNG HỌP LẦU 4": "Phòng họp lầu 4",
}

_WHITESPACE = re.compile(r"\s+")


def _collapse(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


@dataclass(frozen=True)
class RoomId:
    """
    Canonical room identifier.

    Two `RoomId`s are equal iff their canonical keys are equal (aliases
    resolved, whitespace collapsed, case folded). The tolerant
    substring rule lives only in `matches()`, which is meant for
    user-authored strings such as filter selections and card titles.
    """

    name: str = field(compare=False)
    key: str

    @classmethod
    def parse(cls, raw: Any) -> "RoomId":
        text = _collapse(str(raw)) if raw is not None else ""
        name = ROOM_ALIASES.get(text.upper(), text)
        return cls(name=name, key=name.casefold())

    def matches(self, other: "RoomId | str | None") -> bool:
        if other is None:
            return False
        other_id = other if isinstance(other, RoomId) else RoomId.parse(other)
        if not self.key or not other_id.key:
            return False
        return self.key in other_id.key or other_id.key in self.key

    def __str__(self) -> str:
        return self.name


def discover_rooms(room_names: Iterable[Any], defaults: Iterable[str]) -> list[RoomId]:
    """
    Distinct rooms in first-seen order; `defaults` when nothing is found.
    """
    seen: dict[str, RoomId] = {}
    for raw in room_names:
        if raw is None or not str(raw).strip():
            continue
        room = RoomId.parse(raw)
        seen.setdefault(room.key, room)

    if not seen:
        for raw in defaults:
            room = RoomId.parse(raw)
            seen.setdefault(room.key, room)

    return list(seen.values())
