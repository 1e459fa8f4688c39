"""Selection/review state over the chunker output."""
from __future__ import annotations

from typing import Dict, List, Sequence

from .context import InvalidStateError
from .models import CHUNK_STATUSES, Chunk


class ReviewState:
    """Per-chunk inclusion flags and processing status.

    Selection is editable until freeze(); the executor freezes it when a run
    starts so the processed subset cannot shift under the loop.
    """

    def __init__(self, chunks: Sequence[Chunk], *, frozen: bool = False) -> None:
        self.chunks: List[Chunk] = list(chunks)
        self._frozen = frozen

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self.chunks)

    def _chunk(self, index: int) -> Chunk:
        if index < 0 or index >= len(self.chunks):
            raise IndexError(f"No chunk at index {index} (have {len(self.chunks)})")
        return self.chunks[index]

    def _check_editable(self) -> None:
        if self._frozen:
            raise InvalidStateError("Selection is locked once processing has started.")

    def toggle_selection(self, index: int) -> bool:
        self._check_editable()
        ch = self._chunk(index)
        ch.selected = not ch.selected
        return ch.selected

    def set_all_selection(self, selected: bool) -> None:
        self._check_editable()
        for ch in self.chunks:
            ch.selected = bool(selected)

    def freeze(self) -> None:
        self._frozen = True

    def selected_chunks(self) -> List[Chunk]:
        return [c for c in sorted(self.chunks, key=lambda c: c.index) if c.selected]

    def set_status(self, index: int, status: str) -> None:
        if status not in CHUNK_STATUSES:
            raise ValueError(f"Unknown chunk status: {status}")
        self._chunk(index).status = status

    def by_display_id(self, display_id: int) -> Chunk:
        for ch in self.chunks:
            if ch.display_id == display_id:
                return ch
        raise KeyError(display_id)

    def counts(self) -> Dict[str, int]:
        out = {s: 0 for s in CHUNK_STATUSES}
        for ch in self.chunks:
            out[ch.status] = out.get(ch.status, 0) + 1
        out["selected"] = sum(1 for c in self.chunks if c.selected)
        return out
