from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from matching import MATCHER_REGISTRY


@dataclass
class DispatchSettings:
    """Tunables for matching and real-time delivery."""

    average_speed_kmh: float = 30.0
    max_match_distance_km: Optional[float] = None
    match_limit: Optional[int] = None
    matcher: str = "nearest"
    duplicate_request_window_seconds: float = 60.0
    reconcile_interval_seconds: float = 15.0
    stream_queue_size: int = 256

    def __post_init__(self) -> None:
        if self.average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        if self.max_match_distance_km is not None and self.max_match_distance_km < 0:
            raise ValueError("max_match_distance_km cannot be negative")
        if self.match_limit is not None and self.match_limit < 0:
            raise ValueError("match_limit cannot be negative")
        if self.duplicate_request_window_seconds < 0:
            raise ValueError("duplicate_request_window_seconds cannot be negative")
        if self.reconcile_interval_seconds <= 0:
            raise ValueError("reconcile_interval_seconds must be positive")
        if self.stream_queue_size <= 0:
            raise ValueError("stream_queue_size must be positive")
        if self.matcher.lower() not in MATCHER_REGISTRY:
            raise ValueError(
                f"Unknown matcher '{self.matcher}'. Available: {', '.join(MATCHER_REGISTRY)}"
            )
