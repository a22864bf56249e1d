"""Trend detection package.

This package contains modules for:
- Signal detection over stored aggregates (signals.py)
- LLM narration of signals into trends (narrator.py)
- Per-user orchestration and expiry sweep (pipeline.py)
"""

from .signals import (
    VelocitySignal,
    EmergenceSignal,
    ConvergenceSignal,
    ContainerRef,
    TrendSignal,
    detect_velocity,
    detect_emergence,
    detect_convergence,
    detect_signals,
)

from .narrator import NarratedTrend, NarrationResult, narrate_trends

from .pipeline import TrendRunStats, run_trend_detection

__all__ = [
    # Signals
    'VelocitySignal',
    'EmergenceSignal',
    'ConvergenceSignal',
    'ContainerRef',
    'TrendSignal',
    'detect_velocity',
    'detect_emergence',
    'detect_convergence',
    'detect_signals',

    # Narration
    'NarratedTrend',
    'NarrationResult',
    'narrate_trends',

    # Pipeline
    'TrendRunStats',
    'run_trend_detection',
]
