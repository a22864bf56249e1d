"""Container merge advice and execution."""

from .advisor import MergeAdvice, MergeCandidate, MergeSuggestion, load_merge_candidates, suggest_merges
from .executor import MergeExecution, execute_merge
from .pipeline import MergeRunStats, run_container_merges

__all__ = [
    'MergeAdvice',
    'MergeCandidate',
    'MergeSuggestion',
    'load_merge_candidates',
    'suggest_merges',
    'MergeExecution',
    'execute_merge',
    'MergeRunStats',
    'run_container_merges',
]
