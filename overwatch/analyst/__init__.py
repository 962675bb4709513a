"""
Overwatch Analyst

- thesis_analyst: drafts analysis-output.json with Claude (no mutation)
- apply_analysis: applies a reviewed analysis via patch_engine
"""

from .patch_engine import apply_opinion, PatchResult, title_key

__all__ = ["apply_opinion", "PatchResult", "title_key"]
