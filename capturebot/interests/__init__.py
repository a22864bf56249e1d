"""Interest graph maintenance."""

from .weights import (
    ExtractedInterest,
    compute_weight,
    decay_stale_interests,
    record_interests,
)

__all__ = [
    'ExtractedInterest',
    'compute_weight',
    'decay_stale_interests',
    'record_interests',
]
