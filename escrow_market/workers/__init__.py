"""Background workers."""
from .expiry_sweeper import ExpirySweeper, SweepSummary, start_expiry_sweeper

__all__ = ["ExpirySweeper", "SweepSummary", "start_expiry_sweeper"]
