from __future__ import annotations

from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class ProgressUpdate:
    phase_index: int
    total_phases: int
    message: str
    icon: str
    completed: bool


ProgressCallback = Callable[[ProgressUpdate], None]
