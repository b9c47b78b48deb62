"""Thread-safe accumulator of raw measurement samples."""

from __future__ import annotations

import threading
from typing import Dict, List, Tuple

from .models import Phase, Sample


class SampleCollector:
    """Append-only sample store shared by concurrent producers.

    Client-side and server-side callbacks for the same transfer arrive on
    different threads. The collector never drops or merges anything; choosing
    between overlapping samples happens when the aggregator reads them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: Dict[Phase, List[Tuple[int, Sample]]] = {phase: [] for phase in Phase}
        self._sequence = 0

    def record(self, sample: Sample) -> None:
        with self._lock:
            self._sequence += 1
            self._samples[sample.phase].append((self._sequence, sample))

    def snapshot(self, phase: Phase) -> List[Sample]:
        """Samples for ``phase`` ordered by observation time, then arrival."""
        with self._lock:
            entries = list(self._samples[phase])
        entries.sort(key=lambda entry: (entry[1].observed_at, entry[0]))
        return [sample for _, sample in entries]

    def count(self, phase: Phase) -> int:
        with self._lock:
            return len(self._samples[phase])

    def providers(self, phase: Phase) -> List[str]:
        """Provider slugs that recorded samples for ``phase``, in first-seen order."""
        seen: List[str] = []
        with self._lock:
            for _, sample in self._samples[phase]:
                if sample.provider not in seen:
                    seen.append(sample.provider)
        return seen
