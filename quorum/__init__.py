"""quorum: multi-model consensus analysis and turn orchestration."""

__version__ = "0.3.0"
