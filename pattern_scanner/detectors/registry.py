from __future__ import annotations

from typing import Callable, List, Sequence, Tuple

from ..models import Candle, PatternSignal
from .channels import detect_channel_breakout
from .double import detect_double_bottom, detect_double_top
from .flags import detect_bear_flag, detect_bull_flag
from .triangles import detect_ascending_triangle, detect_descending_triangle

Detector = Callable[[str, Sequence[Candle], str], List[PatternSignal]]

ALL_DETECTORS: Tuple[Tuple[str, Detector], ...] = (
    ("bull_flag", detect_bull_flag),
    ("bear_flag", detect_bear_flag),
    ("ascending_triangle", detect_ascending_triangle),
    ("descending_triangle", detect_descending_triangle),
    ("channel_breakout", detect_channel_breakout),
    ("double_top", detect_double_top),
    ("double_bottom", detect_double_bottom),
)
