"""
Scoring model configuration for Aparto livability scores.

Owns every numeric constant that affects the livability score: the step
functions that map raw inputs to 0-10 sub-scores, and the weights of the
overall score. Search radii live with the Overpass query in livability.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import math
from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class Step:
    """Inputs <= max_value score ``score`` (first matching step wins)."""
    max_value: float
    score: int


@dataclass(frozen=True)
class StepScale:
    """Ascending steps plus the score for anything above the last step."""
    steps: Tuple[Step, ...]
    above: int


@dataclass(frozen=True)
class ScoreWeights:
    station: float
    supermarkets: float
    restaurants: float
    convenience: float
    parks: float

    def total(self) -> float:
        return self.station + self.supermarkets + self.restaurants + self.convenience + self.parks


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container. Bump ``version`` on every change to outputs."""
    version: str
    station: StepScale        # input: walking minutes to nearest station
    supermarkets: StepScale   # input: counts within the query radius
    restaurants: StepScale
    convenience: StepScale
    parks: StepScale
    weights: ScoreWeights


# =============================================================================
# Pure scoring functions
# =============================================================================

def apply_steps(scale: StepScale, value: float) -> int:
    """Evaluate a step function at *value*."""
    for step in scale.steps:
        if value <= step.max_value:
            return step.score
    return scale.above


def round_half_up(value: float, digits: int = 1) -> float:
    """Round like a person would; round() uses banker's rounding at .5."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

SCORING_MODEL = ScoringModel(
    version="1.0.0",

    # <=3 min -> 10, <=5 -> 8, <=8 -> 6, <=12 -> 4, <=15 -> 2, else 1
    station=StepScale(
        steps=(Step(3, 10), Step(5, 8), Step(8, 6), Step(12, 4), Step(15, 2)),
        above=1,
    ),

    # 0/1/2/3/4+ -> 0/4/6/8/10
    supermarkets=StepScale(
        steps=(Step(0, 0), Step(1, 4), Step(2, 6), Step(3, 8)),
        above=10,
    ),

    # 0 / 1-5 / 6-15 / 16-30 / 31-50 / 51+ -> 0/3/5/7/8/10
    restaurants=StepScale(
        steps=(Step(0, 0), Step(5, 3), Step(15, 5), Step(30, 7), Step(50, 8)),
        above=10,
    ),

    # 0/1/2/3+ -> 0/4/7/10
    convenience=StepScale(
        steps=(Step(0, 0), Step(1, 4), Step(2, 7)),
        above=10,
    ),

    # 0/1/2/3+ -> 0/5/7/10
    parks=StepScale(
        steps=(Step(0, 0), Step(1, 5), Step(2, 7)),
        above=10,
    ),

    weights=ScoreWeights(
        station=0.25,
        supermarkets=0.25,
        restaurants=0.20,
        convenience=0.15,
        parks=0.15,
    ),
)

# Validate at import time (ValueError, not assert, so validation is never
# stripped by python -O).
if abs(SCORING_MODEL.weights.total() - 1.0) >= 0.001:
    raise ValueError(f"Score weights sum to {SCORING_MODEL.weights.total()}, expected 1.0")
for _name in ("station", "supermarkets", "restaurants", "convenience", "parks"):
    _steps = getattr(SCORING_MODEL, _name).steps
    if any(a.max_value >= b.max_value for a, b in zip(_steps, _steps[1:])):
        raise ValueError(f"{_name} steps must be strictly ascending")
