"""
HyperCut Agent - Document Mutator

The engine's only view of the document being edited. Hosts hand an
implementation to the orchestrator and every tool receives it through
ToolExecutionContext.document; nothing reaches for a process-wide editor.

Track shape (plain dicts, host-defined beyond these keys):
    {"id": "t1", "type": "text" | "video" | "audio",
     "elements": [{"id": "e1", "start_time": 0.0, "duration": 2.5,
                   "content": "hello world", "is_caption": True,
                   "words": [{"start_time": 0.0, "end_time": 0.4, "text": "hello"}]}]}

InMemoryDocument is the dev/test implementation.
"""

from __future__ import annotations

import copy
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class DocumentMutator(Protocol):
    def get_tracks(self) -> list[dict[str, Any]]:
        ...

    def get_total_duration(self) -> float:
        ...

    def replace_tracks(self, tracks: list[dict[str, Any]], selection: list[str] | None = None) -> None:
        ...

    def seek(self, time: float) -> None:
        ...

    def get_selected_elements(self) -> list[dict[str, Any]]:
        ...


class InMemoryDocument:
    """Timeline held in memory. Reads return deep copies."""

    def __init__(self, tracks: list[dict[str, Any]] | None = None):
        self._tracks: list[dict[str, Any]] = copy.deepcopy(tracks or [])
        self._selection: list[str] = []
        self.playhead = 0.0
        self.revision = 0

    def get_tracks(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._tracks)

    def get_total_duration(self) -> float:
        end = 0.0
        for track in self._tracks:
            for element in track.get("elements", []):
                start = float(element.get("start_time", 0.0))
                end = max(end, start + float(element.get("duration", 0.0)))
        return end

    def replace_tracks(self, tracks: list[dict[str, Any]], selection: list[str] | None = None) -> None:
        self._tracks = copy.deepcopy(tracks)
        known = {e.get("id") for t in self._tracks for e in t.get("elements", [])}
        self._selection = [eid for eid in (selection or []) if eid in known]
        self.revision += 1

    def seek(self, time: float) -> None:
        self.playhead = max(0.0, min(float(time), self.get_total_duration()))

    def select(self, element_ids: list[str]) -> None:
        self._selection = list(element_ids)

    def get_selected_elements(self) -> list[dict[str, Any]]:
        selected = set(self._selection)
        return [
            copy.deepcopy(element)
            for track in self._tracks
            for element in track.get("elements", [])
            if element.get("id") in selected
        ]
